"""Slot Manager: the registry of slots and the only place slots are mutated.

Every state change is committed while the registry's exclusive lock is held.
Slow work (cloning, spawning, tmux, termination) happens outside the lock; a
per-slot ``busy`` marker claimed under the lock keeps two lifecycle operations
from interleaving on the same slot.
"""

import asyncio
import logging
import shutil
from collections.abc import Collection
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .agent import build_agent_command
from .blueprints import (
    BlueprintSlotOutcome,
    BlueprintStore,
    resolve_blueprint,
    snapshot_from_slots,
)
from .config import load_project_config
from .discovery import DiscoveryEvent, ServiceDiscoveryParser
from .errors import (
    ConfigNotFoundError,
    InvalidTransitionError,
    OrchestratorError,
    ProcessError,
    SessionError,
    SetupError,
    SlotAlreadyExistsError,
    SlotNotFoundError,
    StateCorruptedError,
)
from .git import GitClient
from .logging_manager import LoggingManager
from .models import (
    LIVE_STATUSES,
    AgentStatus,
    OrchestratorConfig,
    ProjectConfig,
    Slot,
    SlotStatus,
    validate_slot_name,
)
from .ports import PortAllocator, port_is_bindable
from .process_supervisor import ProcessSupervisor, StackProcess
from .rwlock import AsyncRWLock
from .session_controller import AGENT_WINDOW, SessionController
from .state_store import StateStore

logger = logging.getLogger(__name__)

OUTPUT_DRAIN_TIMEOUT = 1.0  # seconds to wait for buffered output once the stack has exited


class _SlotEntry:
    """Registry record: the slot plus the runtime handles that belong to it."""

    def __init__(self, slot: Slot):
        self.slot = slot
        self.process: StackProcess | None = None
        self.consumer: asyncio.Task | None = None
        self.busy: str | None = None
        self.idle = asyncio.Event()
        self.idle.set()


class SlotManager:
    """Owns the slot registry and drives every lifecycle operation."""

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        supervisor: ProcessSupervisor | None = None,
        sessions: SessionController | None = None,
        git: GitClient | None = None,
        state_store: StateStore | None = None,
        allocator: PortAllocator | None = None,
        logging_manager: LoggingManager | None = None,
        blueprints: BlueprintStore | None = None,
    ):
        """Initialize the slot manager.

        Collaborators default to real implementations built from ``config``;
        tests pass fakes.

        Args:
            config: Orchestrator configuration
            supervisor: Stack process supervisor
            sessions: tmux session controller
            git: Git client used for clone/checkout/rebase/push
            state_store: Durable registry checkpoint
            allocator: Port allocator
            logging_manager: Orchestrator, audit and per-slot logging
            blueprints: Blueprint store (``<slots dir>/blueprints`` by default)
        """
        self.config = config or OrchestratorConfig()
        self.slots_dir = Path(self.config.slots_dir)
        self.slots_dir.mkdir(parents=True, exist_ok=True)

        self.supervisor = supervisor or ProcessSupervisor(
            terminate_grace=self.config.terminate_grace_seconds
        )
        self.sessions = sessions or SessionController(
            session_prefix=self.config.session_prefix,
            retry_attempts=self.config.session_retry_attempts,
        )
        self.git = git or GitClient()
        self.state_store = state_store or StateStore(self.config.state_file)
        self.allocator = allocator or PortAllocator(
            range_start=self.config.port_range_start,
            range_end=self.config.port_range_end,
            stride=self.config.port_stride,
            probe=port_is_bindable if self.config.check_port_binding else None,
        )
        self.logging_manager = logging_manager or LoggingManager(
            log_dir=self.config.log_dir, log_level=self.config.log_level
        )
        self.blueprints = blueprints or BlueprintStore(self.slots_dir / "blueprints")

        self._lock = AsyncRWLock(name="registry")
        self._save_lock = asyncio.Lock()
        self._slots: dict[str, _SlotEntry] = {}

        # In-flight creations, recorded under the write lock.
        self._reserved_names: set[str] = set()
        self._reserved_ports: dict[str, set[int]] = {}

        self._monitor_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Queries

    async def list_slots(self) -> list[Slot]:
        """Snapshots of every slot, oldest first."""
        async with self._lock.read_lock():
            slots = [entry.slot.snapshot() for entry in self._slots.values()]
        return sorted(slots, key=lambda s: s.created_at)

    async def get_slot(self, name: str) -> Slot:
        async with self._lock.read_lock():
            return self._require(name).slot.snapshot()

    def _require(self, name: str) -> _SlotEntry:
        entry = self._slots.get(name)
        if entry is None:
            raise SlotNotFoundError(name)
        return entry

    # ------------------------------------------------------------------
    # Create

    async def create(
        self,
        name: str,
        branch: str,
        source: str,
        prompt: str | None = None,
    ) -> Slot:
        """Create a slot: clone, check out ``branch``, allocate ports, open its session.

        Args:
            name: Slot name
            branch: Branch to check out (created from the default branch if missing)
            source: Repository path or URL to clone
            prompt: If given, spawn the agent with this prompt once the slot exists

        Returns:
            Snapshot of the new slot (status Created)

        Raises:
            InvalidSlotNameError: If the name is unsafe
            SlotAlreadyExistsError: If the name is taken or being created
            PortAllocationError: If no ports are left
            GitError, ConfigError, SetupError, SessionError: Creation failed and was rolled back
        """
        validate_slot_name(name)
        clone_path = self.slots_dir / name

        async with self._lock.write_lock():
            if name in self._slots or name in self._reserved_names:
                raise SlotAlreadyExistsError(name)
            if clone_path.exists():
                logger.error(f"Clone directory {clone_path} already exists")
                raise SlotAlreadyExistsError(name)
            self._reserved_names.add(name)

        slot_logger = self.logging_manager.get_slot_logger(name)
        slot_logger.info(f"Creating slot from {source} on branch {branch}")
        cloned = False
        session_opened = False

        try:
            await self.git.clone(source, clone_path)
            cloned = True
            if await self.git.branch_exists(clone_path, branch):
                await self.git.checkout(clone_path, branch)
            else:
                logger.info(f"Branch {branch} not found, creating it in {clone_path}")
                await self.git.checkout(clone_path, branch, create=True)

            project = self._load_optional_config(clone_path)

            async with self._lock.write_lock():
                in_use = {p for e in self._slots.values() for p in e.slot.ports.values()}
                for reserved in self._reserved_ports.values():
                    in_use |= reserved
                ordinal = len(self._slots) + len(self._reserved_ports)
                overrides = project.port_overrides if project else {}
                ports = self.allocator.allocate(overrides, in_use, ordinal)
                self._reserved_ports[name] = set(ports.values())

            session_opened = await self.sessions.ensure_session(
                name, str(clone_path), self._port_env(ports)
            )
            for command in project.setup if project else []:
                slot_logger.info(f"Setup step: {command}")
                try:
                    await self.sessions.run_command(name, command)
                except SessionError as e:
                    raise SetupError(f"setup step '{command}' failed: {e}") from e

            slot = Slot(
                name=name,
                branch_name=branch,
                clone_path=str(clone_path),
                ports=ports,
                source=source,
            )
            async with self._lock.write_lock():
                self._slots[name] = _SlotEntry(slot)
                self._reserved_names.discard(name)
                self._reserved_ports.pop(name, None)
                snapshot = slot.snapshot()

        except Exception as e:
            slot_logger.error(f"Slot creation failed: {e}")
            await self._rollback_create(name, clone_path, cloned, session_opened)
            raise

        logger.info(f"Created slot {name} (ports: {snapshot.ports})")
        self.logging_manager.log_audit_event(
            "slot_create",
            name,
            {"branch": branch, "source": source, "ports": snapshot.ports},
        )
        await self.persist()

        if prompt:
            return await self.spawn_agent(name, prompt=prompt)
        return snapshot

    def _load_optional_config(self, clone_path: Path) -> ProjectConfig | None:
        try:
            return load_project_config(clone_path)
        except ConfigNotFoundError:
            logger.info(f"No project configuration in {clone_path}, creating without ports or setup")
            return None

    async def _rollback_create(
        self, name: str, clone_path: Path, cloned: bool, session_opened: bool
    ) -> None:
        if session_opened:
            try:
                await self.sessions.kill(name)
            except SessionError as e:
                logger.warning(f"Rollback of {name}: failed to kill session: {e}")
        if cloned:
            await self._remove_clone(clone_path)
        async with self._lock.write_lock():
            self._reserved_names.discard(name)
            self._reserved_ports.pop(name, None)

    async def _remove_clone(self, clone_path: Path) -> None:
        if not clone_path.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, clone_path)
            logger.debug(f"Removed clone {clone_path}")
        except OSError as e:
            logger.warning(f"Failed to remove clone {clone_path}: {e}")

    @staticmethod
    def _port_env(ports: dict[str, int]) -> dict[str, str]:
        return {var: str(port) for var, port in ports.items()}

    # ------------------------------------------------------------------
    # Per-slot serialisation

    async def _claim(
        self,
        name: str,
        operation: str,
        allowed: Collection[SlotStatus] | None = None,
    ) -> _SlotEntry:
        """Mark a slot busy for ``operation`` after checking it may run."""
        async with self._lock.write_lock():
            entry = self._require(name)
            if entry.busy is not None:
                raise InvalidTransitionError(name, operation, f"busy ({entry.busy})")
            if allowed is not None and entry.slot.status not in allowed:
                raise InvalidTransitionError(name, operation, entry.slot.status.value)
            entry.busy = operation
            entry.idle.clear()
            return entry

    @staticmethod
    def _release(entry: _SlotEntry) -> None:
        entry.busy = None
        entry.idle.set()

    # ------------------------------------------------------------------
    # Start / stop

    async def start(self, name: str) -> Slot:
        """Spawn the slot's stack and begin watching its output.

        Raises:
            SlotNotFoundError: Unknown slot
            InvalidTransitionError: Slot is not Created or Stopped, or busy
            ConfigNotFoundError, ConfigError: Project configuration missing or invalid
            ProcessError: The stack could not be spawned (status unchanged)
        """
        entry = await self._claim(name, "start", (SlotStatus.CREATED, SlotStatus.STOPPED))
        try:
            # The watcher of a previous run may still be cleaning up after its exit.
            await self._cancel_consumer(entry)
            clone_path = entry.slot.clone_path
            ports = dict(entry.slot.ports)
            project = load_project_config(clone_path)

            try:
                handle = await self.supervisor.spawn(project.stack, clone_path, self._port_env(ports))
            except ProcessError as e:
                async with self._lock.write_lock():
                    entry.slot.failure_reason = str(e)
                self.logging_manager.get_slot_logger(name).error(f"Stack spawn failed: {e}")
                await self.persist()
                raise

            async with self._lock.write_lock():
                entry.slot.status = SlotStatus.STARTING
                entry.slot.endpoints.clear()
                entry.slot.failure_reason = None
                entry.slot.stack_started_at = datetime.now(UTC)
                entry.process = handle
                entry.consumer = asyncio.create_task(
                    self._watch_stack(entry, handle, stream_output=True),
                    name=f"slot-{name}-consumer",
                )
                snapshot = entry.slot.snapshot()
        finally:
            self._release(entry)

        self.logging_manager.get_slot_logger(name).info(f"Stack started (pid {handle.pid})")
        self.logging_manager.log_audit_event(
            "slot_start", name, {"pid": handle.pid, "command": project.stack, "ports": ports}
        )
        await self.persist()
        return snapshot

    async def stop(self, name: str) -> Slot:
        """Terminate the slot's stack and clear its endpoints.

        Raises:
            SlotNotFoundError: Unknown slot
            InvalidTransitionError: Slot is not Starting or Running, or busy
            ProcessError: The stack survived SIGKILL (status unchanged)
        """
        entry = await self._claim(name, "stop", LIVE_STATUSES)
        try:
            handle = entry.process
            await self._cancel_consumer(entry)
            exit_code = await self._terminate(entry, handle)

            async with self._lock.write_lock():
                self._mark_stopped(entry, failure_reason=None)
                snapshot = entry.slot.snapshot()
        finally:
            self._release(entry)

        self.logging_manager.get_slot_logger(name).info("Stack stopped")
        self.logging_manager.log_audit_event("slot_stop", name, {"exit_code": exit_code})
        await self.persist()
        return snapshot

    async def _terminate(self, entry: _SlotEntry, handle: StackProcess | None) -> int | None:
        """Terminate ``handle``; on failure keep it supervised and re-raise."""
        if handle is None:
            return None
        try:
            return await self.supervisor.terminate(handle)
        except ProcessError as e:
            async with self._lock.write_lock():
                entry.slot.failure_reason = str(e)
                if entry.process is handle and entry.consumer is None:
                    entry.consumer = asyncio.create_task(
                        self._watch_stack(entry, handle, stream_output=False)
                    )
            await self.persist()
            raise

    @staticmethod
    def _mark_stopped(entry: _SlotEntry, failure_reason: str | None) -> None:
        entry.slot.status = SlotStatus.STOPPED
        entry.slot.endpoints.clear()
        entry.slot.failure_reason = failure_reason
        entry.slot.stack_started_at = None
        entry.process = None

    async def _cancel_consumer(self, entry: _SlotEntry) -> None:
        """Stop the slot's watcher task and wait for it to finish.

        A watcher that has already committed the stack's exit is left to finish
        its cleanup rather than cancelled.
        """
        task, entry.consumer = entry.consumer, None
        if task is None or task is asyncio.current_task():
            return
        if entry.process is not None and not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Stack output consumption

    async def _watch_stack(self, entry: _SlotEntry, handle: StackProcess, stream_output: bool) -> None:
        """Feed stack output to discovery and fold the process exit into state."""
        loop = asyncio.get_running_loop()
        readiness_timer = loop.call_later(
            self.config.readiness_timeout_seconds, self._warn_still_starting, entry, handle
        )
        try:
            if handle.adopted:
                exit_code = await self._wait_adopted(entry, handle)
            elif stream_output:
                exit_code = await self._consume_until_exit(entry, handle)
            else:
                exit_code = await handle.wait()
        finally:
            readiness_timer.cancel()

        await self._handle_exit(entry, handle, exit_code)

    async def _consume_until_exit(self, entry: _SlotEntry, handle: StackProcess) -> int | None:
        """Stream output until the process exits, then drain what is still buffered.

        A child the stack left behind can keep the output pipes open after the
        stack itself has exited, so the exit is awaited alongside the output.
        """
        reader = asyncio.create_task(self._consume_output(entry, handle))
        try:
            exit_code = await handle.wait()
            _, pending = await asyncio.wait({reader}, timeout=OUTPUT_DRAIN_TIMEOUT)
            if pending:
                logger.warning(f"Output of slot {entry.slot.name} still open after its stack exited")
        finally:
            if not reader.done():
                reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        if not reader.cancelled() and reader.exception() is not None:
            logger.error(f"Reading output of slot {entry.slot.name} failed: {reader.exception()}")
        return exit_code

    async def _consume_output(self, entry: _SlotEntry, handle: StackProcess) -> None:
        name = entry.slot.name
        parser = ServiceDiscoveryParser(entry.slot.ports)
        async for line in handle.lines():
            self.logging_manager.log_stack_output(name, line)
            events = parser.feed_line(line)
            if events:
                await self._record_discoveries(entry, handle, events)
        events = parser.flush()
        if events:
            await self._record_discoveries(entry, handle, events)

    async def _wait_adopted(self, entry: _SlotEntry, handle: StackProcess) -> int | None:
        """Wait for an output-less stack; promote it once the readiness timeout passes."""
        waiter = asyncio.create_task(handle.wait())
        try:
            done, _ = await asyncio.wait({waiter}, timeout=self.config.readiness_timeout_seconds)
            if not done:
                await self._promote_adopted(entry, handle)
            return await waiter
        finally:
            if not waiter.done():
                waiter.cancel()
                await asyncio.gather(waiter, return_exceptions=True)

    async def _promote_adopted(self, entry: _SlotEntry, handle: StackProcess) -> None:
        name = entry.slot.name
        async with self._lock.write_lock():
            if entry.process is not handle or entry.slot.status is not SlotStatus.STARTING:
                return
            if not handle.is_alive():
                return
            entry.slot.status = SlotStatus.RUNNING
            endpoints = dict(entry.slot.endpoints)

        logger.info(f"Slot {name} is running (re-adopted stack still alive, no output to scan)")
        self.logging_manager.log_audit_event(
            "slot_running", name, {"endpoints": endpoints, "adopted": True}
        )
        await self.persist()

    def _warn_still_starting(self, entry: _SlotEntry, handle: StackProcess) -> None:
        if handle.adopted:
            return
        if entry.process is handle and entry.slot.status is SlotStatus.STARTING:
            message = (
                f"Slot {entry.slot.name} is still starting after "
                f"{self.config.readiness_timeout_seconds:.0f}s with no endpoint announced"
            )
            logger.warning(message)
            self.logging_manager.get_slot_logger(entry.slot.name).warning(message)

    async def _record_discoveries(
        self, entry: _SlotEntry, handle: StackProcess, events: list[DiscoveryEvent]
    ) -> None:
        name = entry.slot.name
        promoted = False
        async with self._lock.write_lock():
            if entry.process is not handle or entry.slot.status not in LIVE_STATUSES:
                return
            for event in events:
                entry.slot.endpoints[event.service] = event.url
            if entry.slot.status is SlotStatus.STARTING and handle.is_alive():
                entry.slot.status = SlotStatus.RUNNING
                promoted = True
            endpoints = dict(entry.slot.endpoints)

        slot_logger = self.logging_manager.get_slot_logger(name)
        for event in events:
            slot_logger.info(f"Discovered {event.service} at {event.url}")
        if promoted:
            logger.info(f"Slot {name} is running: {endpoints}")
            self.logging_manager.log_audit_event("slot_running", name, {"endpoints": endpoints})
        await self.persist()

    async def _handle_exit(
        self, entry: _SlotEntry, handle: StackProcess, exit_code: int | None
    ) -> None:
        name = entry.slot.name
        if exit_code is None:
            reason = "stack process exited"
        elif exit_code != 0:
            reason = f"stack exited with code {exit_code}"
        else:
            reason = None

        async with self._lock.write_lock():
            if entry.process is not handle:
                return
            self._mark_stopped(entry, failure_reason=reason)

        # Reap the child and drop its pid file.
        try:
            await self.supervisor.terminate(handle)
        except ProcessError as e:
            logger.warning(f"Failed to clean up exited stack of {name}: {e}")
        self.logging_manager.close_stack_output(name)

        message = f"Stack exited on its own (exit code {exit_code})"
        if reason:
            logger.warning(f"Slot {name}: {reason}")
            self.logging_manager.get_slot_logger(name).warning(message)
        else:
            self.logging_manager.get_slot_logger(name).info(message)
        self.logging_manager.log_audit_event("slot_exit", name, {"exit_code": exit_code})
        await self.persist()

    # ------------------------------------------------------------------
    # Destroy

    async def destroy(self, name: str, purge_logs: bool = False) -> None:
        """Stop the stack, kill the session, remove the clone and forget the slot.

        Waits for any in-flight operation on the slot to finish first.

        Args:
            name: Slot name
            purge_logs: Also delete the slot's log directory

        Raises:
            SlotNotFoundError: Unknown slot (including a second destroy)
            InvalidTransitionError: The slot is already being destroyed
            ProcessError: The stack could not be terminated (slot kept)
            SessionError: The session could not be killed (slot kept, process released)
        """
        while True:
            async with self._lock.write_lock():
                entry = self._require(name)
                if entry.busy == "destroy":
                    raise InvalidTransitionError(name, "destroy", "already being destroyed")
                if entry.busy is None:
                    entry.busy = "destroy"
                    entry.idle.clear()
                    break
            logger.info(f"Destroy of {name} waiting for in-flight {entry.busy}")
            await entry.idle.wait()

        try:
            handle = entry.process
            await self._cancel_consumer(entry)
            await self._terminate(entry, handle)
            if handle is not None:
                async with self._lock.write_lock():
                    self._mark_stopped(entry, failure_reason=None)

            try:
                await self.sessions.kill(name)
            except SessionError:
                await self.persist()
                raise

            await self._remove_clone(Path(entry.slot.clone_path))

            async with self._lock.write_lock():
                del self._slots[name]
        finally:
            self._release(entry)

        logger.info(f"Destroyed slot {name}")
        self.logging_manager.get_slot_logger(name).info("Slot destroyed")
        self.logging_manager.log_audit_event("slot_destroy", name, {"purge_logs": purge_logs})
        if purge_logs:
            self.logging_manager.cleanup_slot_logs(name)
        else:
            self.logging_manager.close_stack_output(name)
        await self.persist()

    # ------------------------------------------------------------------
    # Agent

    async def spawn_agent(
        self,
        name: str,
        prompt: str | None = None,
        allowed_tools: str | None = None,
        max_turns: int | None = None,
    ) -> Slot:
        """Launch the coding agent in the slot's session with a startup brief.

        Raises:
            SlotNotFoundError: Unknown slot
            InvalidTransitionError: The slot is busy or its agent is still running
            SessionError: tmux rejected the launch
        """
        entry = await self._claim(name, "spawn an agent in")
        try:
            if entry.slot.agent_status is AgentStatus.ACTIVE and await self.sessions.agent_alive(name):
                raise InvalidTransitionError(name, "spawn an agent in", "running an agent")

            async with self._lock.read_lock():
                slot = entry.slot.snapshot()

            await self.sessions.ensure_session(name, slot.clone_path, self._port_env(slot.ports))
            command = build_agent_command(
                slot,
                agent_command=self.config.agent_command,
                prompt=prompt,
                allowed_tools=allowed_tools,
                max_turns=max_turns,
            )
            await self.sessions.run_command(name, command, window=AGENT_WINDOW)

            async with self._lock.write_lock():
                entry.slot.agent_status = AgentStatus.ACTIVE
                entry.slot.agent_started_at = datetime.now(UTC)
                snapshot = entry.slot.snapshot()
        finally:
            self._release(entry)

        self.logging_manager.get_slot_logger(name).info("Agent spawned")
        self.logging_manager.log_audit_event(
            "agent_spawn",
            name,
            {"prompt": prompt[:100] if prompt else None, "max_turns": max_turns},
        )
        await self.persist()
        return snapshot

    async def pop_in(self, name: str) -> int:
        """Attach the operator's terminal to the slot's agent session.

        Blocks until the operator detaches. No slot state changes.

        Raises:
            SlotNotFoundError: Unknown slot
            InvalidTransitionError: No active agent
            SessionError: tmux could not attach
        """
        async with self._lock.read_lock():
            entry = self._require(name)
            status = entry.slot.agent_status
        if status is not AgentStatus.ACTIVE:
            raise InvalidTransitionError(name, "pop in to", f"agent {status.value}")
        return self.sessions.attach(name)

    async def check_agents(self) -> list[str]:
        """Downgrade Active agents whose window has closed to Exited.

        Returns:
            Names of slots whose agent was found to have exited
        """
        async with self._lock.read_lock():
            active = [n for n, e in self._slots.items() if e.slot.agent_status is AgentStatus.ACTIVE]

        exited: list[str] = []
        for name in active:
            try:
                alive = await self.sessions.agent_alive(name)
            except SessionError as e:
                logger.warning(f"Could not probe agent of {name}: {e}")
                continue
            if alive:
                continue
            async with self._lock.write_lock():
                entry = self._slots.get(name)
                if entry is None or entry.slot.agent_status is not AgentStatus.ACTIVE:
                    continue
                entry.slot.agent_status = AgentStatus.EXITED
            exited.append(name)
            logger.info(f"Agent of slot {name} has exited")
            self.logging_manager.log_audit_event("agent_exit", name)

        if exited:
            await self.persist()
        return exited

    def start_monitoring(self) -> None:
        """Start the periodic agent health check."""
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self._health_loop(), name="slot-health")

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval)
            try:
                await self.check_agents()
            except Exception as e:
                logger.error(f"Agent health check failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Git lifecycle steps

    async def rebase(self, name: str) -> Slot:
        """Fetch origin and rebase the clone onto the configured base branch."""
        entry = await self._claim(name, "rebase")
        try:
            clone_path = entry.slot.clone_path
            project = self._load_optional_config(Path(clone_path))
            base_branch = project.base_branch if project else "master"
            await self.git.fetch(clone_path)
            await self.git.rebase(clone_path, base_branch)
        finally:
            self._release(entry)

        self.logging_manager.get_slot_logger(name).info(f"Rebased onto origin/{base_branch}")
        return await self.get_slot(name)

    async def push(self, name: str) -> Slot:
        """Push the clone's current branch to origin, setting upstream."""
        entry = await self._claim(name, "push")
        try:
            clone_path = entry.slot.clone_path
            branch = await self.git.current_branch(clone_path)
            await self.git.push(clone_path, branch)
        finally:
            self._release(entry)

        self.logging_manager.get_slot_logger(name).info(f"Pushed {branch} to origin")
        return await self.get_slot(name)

    # ------------------------------------------------------------------
    # Blueprints

    async def apply_blueprint(self, name: str) -> list[BlueprintSlotOutcome]:
        """Create every slot of a stored blueprint, starting stacks and agents as asked.

        Slots are handled one at a time. A failing slot is recorded and the
        rest of the blueprint still applies; slots that were created before a
        later step failed are kept.

        Returns:
            One outcome per blueprint slot, in blueprint order

        Raises:
            BlueprintNotFoundError: Unknown blueprint
            BlueprintValidationError: The blueprint is malformed or incomplete
        """
        blueprint = await self.blueprints.load(name)
        resolved = resolve_blueprint(blueprint)
        logger.info(f"Applying blueprint {name} ({len(resolved)} slots)")

        outcomes = []
        for spec in resolved:
            outcome = BlueprintSlotOutcome(name=spec.name)
            step = "create"
            try:
                outcome.slot = await self.create(spec.name, spec.branch, spec.source)
                if spec.auto_start:
                    step = "start"
                    outcome.slot = await self.start(spec.name)
                if spec.auto_spawn_agent:
                    step = "spawn agent"
                    outcome.slot = await self.spawn_agent(
                        spec.name,
                        prompt=spec.prompt,
                        allowed_tools=spec.allowed_tools,
                        max_turns=spec.max_turns,
                    )
            except OrchestratorError as e:
                outcome.error = f"{step} failed: {e}"
                logger.warning(f"Blueprint {name}: slot {spec.name} {outcome.error}")
            outcomes.append(outcome)

        failed = [o.name for o in outcomes if not o.ok]
        self.logging_manager.log_audit_event(
            "blueprint_apply",
            details={
                "blueprint": name,
                "slots": [o.name for o in outcomes],
                "failed": failed,
            },
        )
        return outcomes

    async def snapshot_blueprint(
        self,
        name: str,
        description: str | None = None,
        slot_names: Collection[str] | None = None,
        overwrite: bool = False,
    ) -> Path:
        """Save existing slots (all of them, or ``slot_names``) as a blueprint.

        Raises:
            SlotNotFoundError: A named slot does not exist
            BlueprintAlreadyExistsError: The name is taken and ``overwrite`` is false
            BlueprintValidationError: Nothing to capture or an invalid name
        """
        async with self._lock.read_lock():
            if slot_names is None:
                entries = list(self._slots.values())
            else:
                entries = [self._require(slot_name) for slot_name in slot_names]
            slots = sorted((e.slot.snapshot() for e in entries), key=lambda s: s.created_at)

        blueprint = snapshot_from_slots(name, description, slots)
        if overwrite:
            path = await self.blueprints.overwrite(blueprint)
        else:
            path = await self.blueprints.save(blueprint)
        self.logging_manager.log_audit_event(
            "blueprint_save",
            details={"blueprint": name, "slots": [s.name for s in slots]},
        )
        return path

    # ------------------------------------------------------------------
    # Persistence and restart

    async def persist(self) -> None:
        """Checkpoint the registry. Failures are logged; memory stays authoritative."""
        async with self._save_lock:
            async with self._lock.read_lock():
                slots = [entry.slot.snapshot() for entry in self._slots.values()]
            try:
                await self.state_store.save(slots)
            except OSError as e:
                logger.error(f"Failed to save state to {self.state_store.state_file}: {e}")

    async def restore(self) -> list[Slot]:
        """Load the checkpoint, reconcile it against the live system and adopt survivors.

        A corrupt checkpoint is logged and replaced by an empty registry; the
        corrupt file is preserved next to the new one.

        Returns:
            Snapshots of the restored slots
        """
        async with self._lock.read_lock():
            if self._slots:
                raise OrchestratorError("restore must run before any slot is created")

        try:
            loaded = await self.state_store.load()
        except StateCorruptedError as e:
            logger.error(f"{e}; starting with an empty registry")
            loaded = None
            await self.persist()

        if not loaded:
            return []

        reconciled = await self.state_store.reconcile(loaded, self.supervisor, self.sessions)

        async with self._lock.write_lock():
            for result in reconciled:
                entry = _SlotEntry(result.slot)
                if result.process is not None:
                    entry.process = result.process
                    entry.consumer = asyncio.create_task(
                        self._watch_stack(entry, result.process, stream_output=False),
                        name=f"slot-{result.slot.name}-watcher",
                    )
                self._slots[result.slot.name] = entry

        for result in reconciled:
            slot = result.slot
            try:
                await self.sessions.ensure_session(
                    slot.name, slot.clone_path, self._port_env(slot.ports)
                )
            except SessionError as e:
                logger.warning(f"Could not reopen session for slot {slot.name}: {e}")

        changes: dict[str, Any] = {r.slot.name: r.changes for r in reconciled if r.changes}
        adopted = [r.slot.name for r in reconciled if r.process is not None]
        logger.info(f"Restored {len(reconciled)} slots ({len(adopted)} stacks re-adopted)")
        self.logging_manager.log_audit_event(
            "state_reconcile",
            details={"slots": len(reconciled), "adopted": adopted, "changes": changes},
        )
        await self.persist()
        return await self.list_slots()

    async def shutdown(self) -> None:
        """Stop background work. Stack processes keep running for re-adoption."""
        logger.info("Shutting down slot manager")
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            await asyncio.gather(self._monitor_task, return_exceptions=True)
            self._monitor_task = None

        for entry in list(self._slots.values()):
            await self._cancel_consumer(entry)

        await self.persist()
        self.logging_manager.close()

    # ------------------------------------------------------------------
    # Live logs

    def subscribe_logs(self) -> asyncio.Queue:
        """Queue receiving every stack output line of every slot from now on."""
        return self.logging_manager.broadcaster.subscribe()

    def unsubscribe_logs(self, queue: asyncio.Queue) -> None:
        self.logging_manager.broadcaster.unsubscribe(queue)
