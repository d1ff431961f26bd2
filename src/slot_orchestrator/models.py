"""Data models for the slot orchestrator."""

import os
import re
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import InvalidSlotNameError

# tmux rejects session names containing "." or ":".
SLOT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}\Z")


class SlotStatus(str, Enum):
    """Lifecycle state of a slot's application stack."""

    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    # Terminal. Destroyed slots are removed from the registry, so this value
    # is never stored or persisted.
    DESTROYED = "destroyed"


class AgentStatus(str, Enum):
    """Lifecycle state of a slot's coding-agent session."""

    IDLE = "idle"
    ACTIVE = "active"
    EXITED = "exited"


LIVE_STATUSES = frozenset({SlotStatus.STARTING, SlotStatus.RUNNING})


def validate_slot_name(name: str) -> str:
    """Return ``name`` if it is safe for paths and tmux session names.

    Raises:
        InvalidSlotNameError: If the name contains unsafe characters
    """
    if not isinstance(name, str) or not SLOT_NAME_PATTERN.match(name):
        raise InvalidSlotNameError(str(name))
    return name


@dataclass
class Slot:
    """One isolated development environment.

    Only the SlotManager holds live Slot objects; everything it hands out is a
    snapshot produced by :meth:`snapshot`.

    Attributes:
        name: Unique identifier, safe for filesystem paths and session names.
        branch_name: Branch checked out in the clone.
        clone_path: Absolute path of the isolated clone.
        status: Stack lifecycle state.
        agent_status: Agent session lifecycle state.
        ports: Port variable name -> allocated port.
        endpoints: Service name -> discovered URL.
        created_at: Creation time (UTC).
        source: Repository path or URL the clone was made from.
        failure_reason: Last external-process failure, if any.
        stack_started_at: When the current stack process was spawned.
        agent_started_at: When the agent was last launched.
    """

    name: str
    branch_name: str
    clone_path: str
    status: SlotStatus = SlotStatus.CREATED
    agent_status: AgentStatus = AgentStatus.IDLE
    ports: dict[str, int] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    source: str | None = None
    failure_reason: str | None = None
    stack_started_at: datetime | None = None
    agent_started_at: datetime | None = None

    def snapshot(self) -> "Slot":
        """Return a copy that shares no mutable state with this slot."""
        return replace(self, ports=dict(self.ports), endpoints=dict(self.endpoints))

    def to_state_dict(self) -> dict[str, Any]:
        """Serialize using the documented state-file field names."""
        data: dict[str, Any] = {
            "name": self.name,
            "branchName": self.branch_name,
            "status": self.status.value,
            "agentStatus": self.agent_status.value,
            "ports": dict(self.ports),
            "endpoints": dict(self.endpoints),
            "clonePath": self.clone_path,
            "createdAt": self.created_at.isoformat(),
        }
        if self.source:
            data["source"] = self.source
        if self.failure_reason:
            data["failureReason"] = self.failure_reason
        return data

    @classmethod
    def from_state_dict(cls, data: dict[str, Any]) -> "Slot":
        """Build a slot from a state-file entry.

        Raises:
            KeyError: If a required field is missing
            ValueError: If a field has an unexpected value
        """
        created_at = datetime.fromisoformat(data["createdAt"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)

        status = SlotStatus(data["status"])
        if status is SlotStatus.DESTROYED:
            raise ValueError(f"slot '{data['name']}' is stored as destroyed")

        return cls(
            name=validate_slot_name(data["name"]),
            branch_name=data["branchName"],
            clone_path=data["clonePath"],
            status=status,
            agent_status=AgentStatus(data["agentStatus"]),
            ports={str(k): int(v) for k, v in (data.get("ports") or {}).items()},
            endpoints={str(k): str(v) for k, v in (data.get("endpoints") or {}).items()},
            created_at=created_at,
            source=data.get("source"),
            failure_reason=data.get("failureReason"),
        )


@dataclass
class ProjectConfig:
    """Per-repository configuration read from ``.slot-orchestrator.yaml``.

    Attributes:
        stack: Shell-style command line that runs the application stack.
        setup: Commands run once, in order, in every new clone.
        port_overrides: Variable name -> preferred port (None for no preference).
        base_branch: Branch that ``rebase`` rebases onto.
    """

    stack: str
    setup: list[str] = field(default_factory=list)
    port_overrides: dict[str, int | None] = field(default_factory=dict)
    base_branch: str = "master"


def _env_bool(key: str, default: bool) -> bool:
    return os.getenv(key, str(default)).lower() in ("true", "1", "yes", "on")


class OrchestratorConfig:
    """Configuration for the slot orchestrator process."""

    ENV_PREFIX = "SLOT_ORCHESTRATOR_"

    def __init__(
        self,
        slots_dir: str = "~/.slot-orchestrator/slots",
        state_file: str | None = None,
        log_dir: str = "~/.slot-orchestrator/logs",
        log_level: str = "INFO",
        port_range_start: int = 5000,
        port_range_end: int = 65000,
        port_stride: int = 10,
        check_port_binding: bool = True,
        session_prefix: str = "slot-",
        terminate_grace_seconds: float = 10.0,
        readiness_timeout_seconds: float = 120.0,
        agent_command: str = "claude",
        health_check_interval: float = 30.0,
        session_retry_attempts: int = 3,
        server_host: str = "localhost",
        server_port: int = 8010,
    ):
        self.slots_dir = os.path.expanduser(slots_dir)
        self.state_file = os.path.expanduser(
            state_file or os.path.join(self.slots_dir, "state.json")
        )
        self.log_dir = os.path.expanduser(log_dir)
        self.log_level = log_level
        self.port_range_start = port_range_start
        self.port_range_end = port_range_end
        self.port_stride = port_stride
        self.check_port_binding = check_port_binding
        self.session_prefix = session_prefix
        self.terminate_grace_seconds = terminate_grace_seconds
        self.readiness_timeout_seconds = readiness_timeout_seconds
        self.agent_command = agent_command
        self.health_check_interval = health_check_interval
        self.session_retry_attempts = session_retry_attempts
        self.server_host = server_host
        self.server_port = server_port

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load configuration from ``SLOT_ORCHESTRATOR_*`` environment variables."""
        p = cls.ENV_PREFIX
        defaults = cls()
        return cls(
            slots_dir=os.getenv(f"{p}SLOTS_DIR", defaults.slots_dir),
            state_file=os.getenv(f"{p}STATE_FILE"),
            log_dir=os.getenv(f"{p}LOG_DIR", defaults.log_dir),
            log_level=os.getenv(f"{p}LOG_LEVEL", defaults.log_level),
            port_range_start=int(os.getenv(f"{p}PORT_RANGE_START", defaults.port_range_start)),
            port_range_end=int(os.getenv(f"{p}PORT_RANGE_END", defaults.port_range_end)),
            port_stride=int(os.getenv(f"{p}PORT_STRIDE", defaults.port_stride)),
            check_port_binding=_env_bool(f"{p}CHECK_PORT_BINDING", defaults.check_port_binding),
            session_prefix=os.getenv(f"{p}SESSION_PREFIX", defaults.session_prefix),
            terminate_grace_seconds=float(
                os.getenv(f"{p}TERMINATE_GRACE", defaults.terminate_grace_seconds)
            ),
            readiness_timeout_seconds=float(
                os.getenv(f"{p}READINESS_TIMEOUT", defaults.readiness_timeout_seconds)
            ),
            agent_command=os.getenv(f"{p}AGENT_COMMAND", defaults.agent_command),
            health_check_interval=float(
                os.getenv(f"{p}HEALTH_CHECK_INTERVAL", defaults.health_check_interval)
            ),
            session_retry_attempts=int(
                os.getenv(f"{p}SESSION_RETRIES", defaults.session_retry_attempts)
            ),
            server_host=os.getenv(f"{p}HOST", defaults.server_host),
            server_port=int(os.getenv(f"{p}PORT", defaults.server_port)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a plain dict representation."""
        return {
            "slots_dir": self.slots_dir,
            "state_file": self.state_file,
            "log_dir": self.log_dir,
            "log_level": self.log_level,
            "port_range_start": self.port_range_start,
            "port_range_end": self.port_range_end,
            "port_stride": self.port_stride,
            "check_port_binding": self.check_port_binding,
            "session_prefix": self.session_prefix,
            "terminate_grace_seconds": self.terminate_grace_seconds,
            "readiness_timeout_seconds": self.readiness_timeout_seconds,
            "agent_command": self.agent_command,
            "health_check_interval": self.health_check_interval,
            "session_retry_attempts": self.session_retry_attempts,
            "server_host": self.server_host,
            "server_port": self.server_port,
        }
