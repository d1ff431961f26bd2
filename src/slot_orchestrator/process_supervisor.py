"""Process supervisor for slot application stacks.

Owns one directly spawned child process per running slot: spawning it with the
slot's port environment, exposing its combined stdout/stderr as an async line
stream, observing its exit, and terminating it (SIGTERM, then SIGKILL after a
grace period).

Each stack runs in its own process group and records its pid in the clone so
that a restarted orchestrator can find and re-adopt a stack that outlived it.
"""

import asyncio
import logging
import os
import shlex
import signal
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path

import psutil

from .errors import ProcessError

logger = logging.getLogger(__name__)

PID_DIRNAME = ".slot-orchestrator"
PID_FILENAME = "stack.pid"

DEFAULT_TERMINATE_GRACE = 10.0  # seconds between SIGTERM and SIGKILL
DEFAULT_POLL_INTERVAL = 1.0  # seconds between liveness polls of adopted processes
STREAM_LIMIT = 1024 * 1024  # longest line the pipe readers accept

_EOF = object()


def pid_file_path(working_dir: str | Path) -> Path:
    return Path(working_dir) / PID_DIRNAME / PID_FILENAME


def _process_matches(pid: int, create_time: float | None) -> bool:
    """True if ``pid`` is running, not a zombie, and (optionally) was started at ``create_time``."""
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        if create_time is not None and abs(proc.create_time() - create_time) > 1.0:
            return False
        return True
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


class StackProcess:
    """Handle for one stack process.

    Spawned handles stream output lines; adopted handles (processes found
    alive after an orchestrator restart) have no output and their exit is
    observed by polling.
    """

    def __init__(
        self,
        pid: int,
        process: asyncio.subprocess.Process | None = None,
        working_dir: str | Path | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.pid = pid
        self.process = process
        self.working_dir = Path(working_dir) if working_dir else None
        self.poll_interval = poll_interval
        self._queue: asyncio.Queue = asyncio.Queue()
        self._readers: list[asyncio.Task] = []
        self._lines_taken = False
        self._exited = False

    @property
    def adopted(self) -> bool:
        return self.process is None

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process else None

    def is_alive(self) -> bool:
        if self.process is not None:
            return self.process.returncode is None
        return not self._exited and ProcessSupervisor.is_alive(self.pid)

    def _start_readers(self) -> None:
        assert self.process is not None
        for stream in (self.process.stdout, self.process.stderr):
            if stream is not None:
                self._readers.append(asyncio.create_task(self._pump(stream)))

    async def _pump(self, stream: asyncio.StreamReader) -> None:
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    # Line longer than STREAM_LIMIT: hand over what is buffered.
                    raw = await stream.read(STREAM_LIMIT)
                if not raw:
                    break
                self._queue.put_nowait(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        finally:
            self._queue.put_nowait(_EOF)

    async def lines(self) -> AsyncIterator[str]:
        """Yield output lines until both output streams are closed.

        Lines from one stream arrive in the order that stream flushed them;
        ordering between stdout and stderr is best effort. The iterator can be
        taken only once.
        """
        if self._lines_taken:
            raise RuntimeError(f"output of process {self.pid} is already being consumed")
        self._lines_taken = True

        remaining = len(self._readers)
        while remaining:
            item = await self._queue.get()
            if item is _EOF:
                remaining -= 1
                continue
            yield item

    async def wait(self) -> int | None:
        """Wait for the process to exit and return its exit code (None if adopted).

        Returns as soon as the process itself has exited, even while a child
        it left behind still holds its output pipes open.
        """
        if self.process is not None:
            # Process.wait() also waits for the pipes to close.
            waiter = asyncio.ensure_future(self.process.wait())
            try:
                while not waiter.done() and self.process.returncode is None:
                    await asyncio.wait({waiter}, timeout=self.poll_interval)
            finally:
                if not waiter.done():
                    waiter.cancel()
            self._exited = True
            return self.process.returncode

        while ProcessSupervisor.is_alive(self.pid):
            await asyncio.sleep(self.poll_interval)
        self._exited = True
        return None

    async def close_readers(self, timeout: float = 2.0) -> None:
        if not self._readers:
            return
        _, pending = await asyncio.wait(self._readers, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class ProcessSupervisor:
    """Spawns, observes and terminates slot stack processes."""

    def __init__(
        self,
        terminate_grace: float = DEFAULT_TERMINATE_GRACE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        """Initialize the supervisor.

        Args:
            terminate_grace: Seconds to wait after SIGTERM before sending SIGKILL
            poll_interval: Seconds between liveness polls for adopted processes
        """
        self.terminate_grace = terminate_grace
        self.poll_interval = poll_interval

    async def spawn(
        self,
        command: str | Sequence[str],
        working_dir: str | Path,
        env: Mapping[str, str] | None = None,
    ) -> StackProcess:
        """Spawn the stack process.

        Args:
            command: Command line (shell-style string or argv list)
            working_dir: Directory to run in; also where the pid file is written
            env: Extra environment variables layered over the current environment

        Returns:
            Handle whose ``lines()`` yields combined output

        Raises:
            ProcessError: If the process cannot be started
        """
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise ProcessError("empty stack command")

        full_env = os.environ.copy()
        full_env.update({k: str(v) for k, v in (env or {}).items()})

        logger.info(f"Spawning stack process in {working_dir}: {shlex.join(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(working_dir),
                env=full_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessError(f"failed to spawn {argv[0]}: {e}") from e

        handle = StackProcess(process.pid, process, working_dir, self.poll_interval)
        handle._start_readers()
        self._write_pid_file(working_dir, process.pid)
        return handle

    def adopt(self, pid: int, working_dir: str | Path | None = None) -> StackProcess:
        """Wrap a surviving stack process found during reconciliation."""
        logger.info(f"Adopting running stack process {pid}")
        return StackProcess(pid, None, working_dir, self.poll_interval)

    async def terminate(self, handle: StackProcess, grace: float | None = None) -> int | None:
        """Terminate a stack process: SIGTERM, wait ``grace`` seconds, then SIGKILL.

        Idempotent: terminating an already exited process only reaps it. Children
        still running in the stack's process group afterwards get SIGTERM.

        Returns:
            Exit code of the process (None for adopted processes)
        """
        grace = self.terminate_grace if grace is None else grace

        if handle.is_alive():
            logger.info(f"Sending SIGTERM to stack process {handle.pid}")
            self._signal(handle, signal.SIGTERM)
            try:
                await asyncio.wait_for(handle.wait(), timeout=grace)
            except TimeoutError:
                logger.warning(
                    f"Stack process {handle.pid} ignored SIGTERM for {grace}s, sending SIGKILL"
                )
                self._signal(handle, signal.SIGKILL)
                try:
                    await asyncio.wait_for(handle.wait(), timeout=max(grace, 5.0))
                except TimeoutError as e:
                    raise ProcessError(f"stack process {handle.pid} survived SIGKILL") from e

        code = await handle.wait()
        if not handle.adopted:
            self._signal_group_leftovers(handle)
        await handle.close_readers()
        self._remove_pid_file(handle)
        return code

    @staticmethod
    def is_alive(pid: int) -> bool:
        """Non-blocking liveness probe; zombies count as dead."""
        return _process_matches(pid, None)

    def find_stack_process(self, working_dir: str | Path) -> int | None:
        """Return the pid recorded in ``working_dir`` if that process still runs."""
        path = pid_file_path(working_dir)
        try:
            fields = path.read_text().split()
            pid = int(fields[0])
            create_time = float(fields[1]) if len(fields) > 1 else None
        except (OSError, ValueError, IndexError):
            return None
        return pid if _process_matches(pid, create_time) else None

    def _signal(self, handle: StackProcess, sig: signal.Signals) -> None:
        try:
            pgid = os.getpgid(handle.pid)
        except ProcessLookupError:
            return
        try:
            if pgid == handle.pid:
                os.killpg(pgid, sig)
            else:
                os.kill(handle.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            raise ProcessError(f"not allowed to signal process {handle.pid}: {e}") from e

    def _signal_group_leftovers(self, handle: StackProcess) -> None:
        """SIGTERM children the stack left running in its process group."""
        try:
            os.killpg(handle.pid, signal.SIGTERM)
            logger.info(f"Terminated leftover processes of stack {handle.pid}")
        except (ProcessLookupError, PermissionError):
            pass

    def _write_pid_file(self, working_dir: str | Path, pid: int) -> None:
        path = pid_file_path(working_dir)
        try:
            create_time = psutil.Process(pid).create_time()
        except psutil.Error:
            create_time = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(f"{pid} {create_time}\n" if create_time else f"{pid}\n")
        except OSError as e:
            logger.warning(f"Failed to write pid file {path}: {e}")

    def _remove_pid_file(self, handle: StackProcess) -> None:
        if handle.working_dir is None:
            return
        path = pid_file_path(handle.working_dir)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove pid file {path}: {e}")
