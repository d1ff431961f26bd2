"""Tmux session controller for slot agent sessions.

Each slot owns one tmux session named ``<prefix><slot>``. The session has a
``shell`` window (setup commands run there) and, once an agent is spawned, an
``agent`` window that closes when the agent exits. The operator attaches to
the session with tmux's own attach/detach mechanism.
"""

import asyncio
import logging
import os
import subprocess
from collections.abc import Callable, Mapping
from typing import Any

import libtmux
from libtmux.exc import LibTmuxException

from .errors import SessionError

logger = logging.getLogger(__name__)

SHELL_WINDOW = "shell"
AGENT_WINDOW = "agent"


class SessionController:
    """Manages slot sessions via libtmux."""

    def __init__(
        self,
        session_prefix: str = "slot-",
        retry_attempts: int = 3,
        retry_delay: float = 0.5,
        server: libtmux.Server | None = None,
    ):
        """Initialize the controller.

        Args:
            session_prefix: Prefix added to slot names to form session names
            retry_attempts: Attempts per operation before giving up
            retry_delay: Seconds between attempts
            server: libtmux server to use (defaults to the user's tmux server)
        """
        self.session_prefix = session_prefix
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.server = server if server is not None else libtmux.Server()

    def session_name(self, slot_id: str) -> str:
        return f"{self.session_prefix}{slot_id}"

    async def _call(self, description: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking libtmux call in a worker thread with bounded retries."""
        last_error: Exception | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await asyncio.to_thread(func, *args)
            except (LibTmuxException, OSError) as e:
                last_error = e
                logger.warning(
                    f"tmux {description} failed (attempt {attempt}/{self.retry_attempts}): {e}"
                )
                if attempt < self.retry_attempts:
                    await asyncio.sleep(self.retry_delay)
        raise SessionError(f"tmux {description} failed: {last_error}") from last_error

    def _find_session(self, name: str) -> libtmux.Session | None:
        for session in self.server.sessions:
            if session.session_name == name:
                return session
        return None

    def _require_session(self, slot_id: str) -> libtmux.Session:
        name = self.session_name(slot_id)
        session = self._find_session(name)
        if session is None:
            raise SessionError(f"tmux session '{name}' does not exist")
        return session

    @staticmethod
    def _find_window(session: libtmux.Session, window_name: str) -> libtmux.Window | None:
        for window in session.windows:
            if window.window_name == window_name:
                return window
        return None

    async def ensure_session(
        self,
        slot_id: str,
        start_directory: str | None = None,
        env: Mapping[str, Any] | None = None,
    ) -> bool:
        """Create the slot's session unless it already exists.

        Args:
            slot_id: Slot name
            start_directory: Working directory for new windows
            env: Session environment (the slot's port variables)

        Returns:
            True if a session was created, False if it already existed
        """
        name = self.session_name(slot_id)

        def _ensure() -> bool:
            if self.server.has_session(name):
                return False
            session = self.server.new_session(
                session_name=name,
                window_name=SHELL_WINDOW,
                start_directory=start_directory,
                attach=False,
            )
            for key, value in (env or {}).items():
                session.set_environment(key, str(value))
            return True

        created = await self._call(f"new-session {name}", _ensure)
        if created:
            logger.info(f"Created tmux session: {name}")
        return created

    async def session_exists(self, slot_id: str) -> bool:
        name = self.session_name(slot_id)
        return await self._call(f"has-session {name}", self.server.has_session, name)

    async def run_command(self, slot_id: str, command: str, window: str | None = None) -> None:
        """Type ``command`` into a window of the slot's session and press Enter.

        The window is created in the session's start directory if missing.
        """
        window_name = window or SHELL_WINDOW

        def _send() -> None:
            session = self._require_session(slot_id)
            target = self._find_window(session, window_name)
            if target is None:
                start_directory = None
                first = session.windows[0] if session.windows else None
                if first is not None and first.panes:
                    start_directory = first.panes[0].pane_current_path
                target = session.new_window(
                    window_name=window_name,
                    start_directory=start_directory,
                    attach=False,
                )
            target.panes[0].send_keys(command, enter=True)

        await self._call(f"send-keys {self.session_name(slot_id)}:{window_name}", _send)
        logger.debug(f"Sent command to {self.session_name(slot_id)}:{window_name}: {command}")

    async def agent_alive(self, slot_id: str) -> bool:
        """True if the session exists and still has its agent window."""

        def _probe() -> bool:
            session = self._find_session(self.session_name(slot_id))
            return session is not None and self._find_window(session, AGENT_WINDOW) is not None

        return await self._call(f"agent probe {self.session_name(slot_id)}", _probe)

    async def kill(self, slot_id: str) -> bool:
        """Terminate the slot's session.

        Returns:
            True if a session was killed, False if none existed
        """
        name = self.session_name(slot_id)

        def _kill() -> bool:
            if not self.server.has_session(name):
                return False
            self.server.kill_session(name)
            return True

        killed = await self._call(f"kill-session {name}", _kill)
        if killed:
            logger.info(f"Killed tmux session: {name}")
        return killed

    def attach(self, slot_id: str) -> int:
        """Attach the operator's terminal to the slot's session.

        Blocks the calling thread until the operator detaches. When already
        running inside tmux the client is switched instead, which returns at once.

        Returns:
            Exit status of the tmux client

        Raises:
            SessionError: If the session is missing or tmux cannot be run
        """
        name = self.session_name(slot_id)
        if not self.server.has_session(name):
            raise SessionError(f"tmux session '{name}' does not exist")

        verb = "switch-client" if os.environ.get("TMUX") else "attach-session"
        logger.info(f"Attaching to tmux session {name} ({verb})")
        try:
            result = subprocess.run(["tmux", verb, "-t", name], check=False)
        except OSError as e:
            raise SessionError(f"failed to run tmux {verb}: {e}") from e

        if result.returncode != 0:
            raise SessionError(f"tmux {verb} -t {name} exited with {result.returncode}")
        return result.returncode
