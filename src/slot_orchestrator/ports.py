"""Port allocation for slot stacks."""

import logging
import socket
from collections.abc import Callable, Iterable, Mapping

from .errors import PortAllocationError

logger = logging.getLogger(__name__)


def port_is_bindable(port: int, host: str = "127.0.0.1") -> bool:
    """Return True if nothing on this machine is currently listening on ``port``."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Assigns conflict-free ports to a new slot.

    The allocator holds no state of its own: callers pass in the ports already
    used by live slots and in-flight creations, and the allocator must be
    invoked while the registry's exclusive lock is held.

    Layout is deterministic for a given ordinal. Variable ``i`` (in sorted
    order) starts its search at ``preferred + ordinal * stride`` when a
    preferred port is configured, otherwise at
    ``range_start + ordinal * stride + i``, and moves upward past taken ports,
    wrapping inside the range.
    """

    def __init__(
        self,
        range_start: int = 5000,
        range_end: int = 65000,
        stride: int = 10,
        probe: Callable[[int], bool] | None = port_is_bindable,
    ):
        """Initialize the allocator.

        Args:
            range_start: Lowest port that may be assigned
            range_end: Highest port that may be assigned
            stride: Distance between the layouts of consecutive slot ordinals
            probe: Optional check that a port is free at the OS level; None disables it
        """
        if not 0 < range_start <= range_end < 65536:
            raise ValueError(f"invalid port range {range_start}-{range_end}")
        if stride < 1:
            raise ValueError("stride must be positive")
        self.range_start = range_start
        self.range_end = range_end
        self.stride = stride
        self.probe = probe

    @property
    def capacity(self) -> int:
        return self.range_end - self.range_start + 1

    def allocate(
        self,
        required: Mapping[str, int | None],
        in_use: Iterable[int],
        ordinal: int = 0,
    ) -> dict[str, int]:
        """Allocate one port per required variable.

        Args:
            required: Variable name -> preferred port (or None)
            in_use: Ports held by other non-destroyed slots and reservations
            ordinal: Position of the new slot, used to spread layouts apart

        Returns:
            Mapping of variable name -> port

        Raises:
            PortAllocationError: If the range has no free port left
        """
        taken = set(in_use)
        assignments: dict[str, int] = {}

        for index, var in enumerate(sorted(required)):
            preferred = required[var]
            if preferred is not None:
                start = preferred + ordinal * self.stride
            else:
                start = self.range_start + ordinal * self.stride + index
            port = self._scan(start, taken)
            taken.add(port)
            assignments[var] = port

        if assignments:
            logger.debug(f"Allocated ports (ordinal {ordinal}): {assignments}")
        return assignments

    def _scan(self, start: int, taken: set[int]) -> int:
        span = self.capacity
        offset = (start - self.range_start) % span
        for step in range(span):
            port = self.range_start + (offset + step) % span
            if port in taken:
                continue
            if self.probe is not None and not self.probe(port):
                logger.debug(f"Port {port} is held by another process, skipping")
                continue
            return port
        raise PortAllocationError(
            f"no free port in range {self.range_start}-{self.range_end} "
            f"({len(taken)} already assigned)"
        )
