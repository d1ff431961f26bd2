"""Durable slot registry checkpoint and startup reconciliation.

The state file is a JSON document with stable, camelCase field names so that
tooling outside the orchestrator can read it::

    {"slots": [{"name", "branchName", "status", "agentStatus", "ports",
                "endpoints", "clonePath", "createdAt"}, ...]}

Writes go to a temporary file that is then renamed over the real one, so a
reader never sees a half-written document. The file is only a hint: at startup
``reconcile`` re-derives process and session liveness before any loaded
status is trusted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiofiles

from .errors import SessionError, StateCorruptedError
from .models import LIVE_STATUSES, AgentStatus, Slot, SlotStatus

if TYPE_CHECKING:
    from .process_supervisor import ProcessSupervisor, StackProcess
    from .session_controller import SessionController

logger = logging.getLogger(__name__)


@dataclass
class ReconciledSlot:
    """A loaded slot after its liveness beliefs were checked.

    Attributes:
        slot: The corrected slot.
        process: Re-adopted stack process, if one survived.
        changes: Human-readable notes on what was corrected.
    """

    slot: Slot
    process: StackProcess | None = None
    changes: list[str] = field(default_factory=list)


class StateStore:
    """Reads and writes the slot registry checkpoint."""

    def __init__(self, state_file: str | Path):
        self.state_file = Path(state_file)
        self._corrupt_pending_backup = False

    async def save(self, slots: list[Slot]) -> None:
        """Atomically write the full registry.

        If the previous file was found corrupt at load time it is first copied
        aside (``state.json.corrupt-<timestamp>``) so no data is lost.
        """
        data = {"slots": [slot.to_state_dict() for slot in slots]}
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

        if self._corrupt_pending_backup and self.state_file.exists():
            stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
            backup = self.state_file.with_name(f"{self.state_file.name}.corrupt-{stamp}")
            await asyncio.to_thread(shutil.copy2, self.state_file, backup)
            logger.warning(f"Preserved corrupt state file as {backup}")
        self._corrupt_pending_backup = False

        temp_file = self.state_file.with_name(f"{self.state_file.name}.tmp")
        async with aiofiles.open(temp_file, "w") as f:
            await f.write(json.dumps(data, indent=2))
            await f.flush()
            os.fsync(f.fileno())

        temp_file.replace(self.state_file)
        logger.debug(f"Saved {len(slots)} slots to {self.state_file}")

    async def load(self) -> list[Slot] | None:
        """Read the registry checkpoint.

        Returns:
            The stored slots, or None if no state file exists yet

        Raises:
            StateCorruptedError: If the file exists but is malformed. The file
                is left untouched.
        """
        if not self.state_file.exists():
            logger.info(f"No state file at {self.state_file}, starting fresh")
            return None

        async with aiofiles.open(self.state_file) as f:
            content = await f.read()

        try:
            slots = self._decode(json.loads(content))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            self._corrupt_pending_backup = True
            raise StateCorruptedError(self.state_file, f"{type(e).__name__}: {e}") from e

        logger.info(f"Loaded {len(slots)} slots from {self.state_file}")
        return slots

    @staticmethod
    def _decode(data: Any) -> list[Slot]:
        if not isinstance(data, dict) or not isinstance(data.get("slots"), list):
            raise ValueError("expected an object with a 'slots' list")

        slots: list[Slot] = []
        seen: set[str] = set()
        for entry in data["slots"]:
            slot = Slot.from_state_dict(entry)
            if slot.name in seen:
                raise ValueError(f"duplicate slot name '{slot.name}'")
            seen.add(slot.name)
            slots.append(slot)
        return slots

    async def reconcile(
        self,
        slots: list[Slot],
        supervisor: ProcessSupervisor,
        sessions: SessionController,
    ) -> list[ReconciledSlot]:
        """Correct loaded liveness beliefs against the live system.

        For each slot independently:

        - status Starting/Running but no recorded stack process alive -> Stopped,
          endpoints cleared;
        - a surviving stack process is re-adopted (Starting slots that already
          discovered endpoints become Running);
        - agent Active but its session/agent window is gone -> Exited.

        Clone directories and branches are never touched.
        """
        results: list[ReconciledSlot] = []
        for slot in slots:
            results.append(await self._reconcile_one(slot, supervisor, sessions))
        return results

    async def _reconcile_one(
        self,
        slot: Slot,
        supervisor: ProcessSupervisor,
        sessions: SessionController,
    ) -> ReconciledSlot:
        result = ReconciledSlot(slot=slot)

        if slot.status in LIVE_STATUSES:
            pid = supervisor.find_stack_process(slot.clone_path)
            if pid is None:
                result.changes.append(f"status {slot.status.value} -> stopped (no stack process)")
                slot.status = SlotStatus.STOPPED
                slot.endpoints.clear()
                slot.failure_reason = "stack process not found after orchestrator restart"
            else:
                result.process = supervisor.adopt(pid, slot.clone_path)
                if slot.status is SlotStatus.STARTING and slot.endpoints:
                    slot.status = SlotStatus.RUNNING
                    result.changes.append("status starting -> running (endpoints known)")
                result.changes.append(f"re-adopted stack process {pid}")
        elif slot.endpoints:
            slot.endpoints.clear()
            result.changes.append("cleared endpoints of stopped slot")

        if slot.agent_status is AgentStatus.ACTIVE:
            try:
                alive = await sessions.agent_alive(slot.name)
            except SessionError as e:
                logger.warning(f"Could not probe agent session of {slot.name}: {e}")
                alive = False
            if not alive:
                slot.agent_status = AgentStatus.EXITED
                result.changes.append("agent active -> exited (session gone)")

        if result.changes:
            logger.info(f"Reconciled slot {slot.name}: {'; '.join(result.changes)}")
        return result
