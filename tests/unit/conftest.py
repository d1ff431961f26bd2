"""Shared fixtures for slot orchestrator tests."""

import asyncio
import os
import shutil
import signal
import sys
import time
from pathlib import Path
from typing import Any

import pytest
import yaml

from slot_orchestrator.errors import GitError, SessionError
from slot_orchestrator.logging_manager import LoggingManager
from slot_orchestrator.models import OrchestratorConfig
from slot_orchestrator.process_supervisor import ProcessSupervisor
from slot_orchestrator.session_controller import AGENT_WINDOW, SHELL_WINDOW
from slot_orchestrator.slot_manager import SlotManager

# Stack used by slot tests. STACK_MODE (inherited from the test environment)
# selects the behaviour.
STACK_SCRIPT = """\
import os
import sys
import time

mode = os.environ.get("STACK_MODE", "serve")
port = os.environ.get("API_PORT", "0")
if mode == "crash":
    print("booting", flush=True)
    sys.exit(3)
if mode == "silent":
    time.sleep(60)
if mode == "orphan":
    import subprocess

    subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
    print("Now listening on: http://localhost:" + port, flush=True)
    sys.exit(3)
print("\\x1b[32minfo\\x1b[0m: Now listening on: http://localhost:" + port, flush=True)
print("Login to the dashboard at http://localhost:18888/login?t=abc", flush=True)
time.sleep(60)
"""


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.05) -> None:
    """Poll an async or sync predicate until it is truthy."""
    deadline = time.monotonic() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class FakeGit:
    """Git client double: "clones" by copying a local directory."""

    def __init__(self):
        self.calls: list[tuple[Any, ...]] = []
        self.branches: dict[str, str] = {}
        self.fail_clone: Exception | None = None
        self.clone_delay = 0.0

    async def clone(self, source: str, target) -> None:
        self.calls.append(("clone", source, str(target)))
        if self.clone_delay:
            await asyncio.sleep(self.clone_delay)
        if self.fail_clone is not None:
            raise self.fail_clone
        shutil.copytree(source, target)
        self.branches[str(target)] = "master"

    async def branch_exists(self, repo, branch: str) -> bool:
        return branch == "master"

    async def checkout(self, repo, branch: str, create: bool = False) -> None:
        self.calls.append(("checkout", str(repo), branch, create))
        self.branches[str(repo)] = branch

    async def current_branch(self, repo) -> str:
        return self.branches.get(str(repo), "master")

    async def fetch(self, repo) -> None:
        self.calls.append(("fetch", str(repo)))

    async def rebase(self, repo, onto: str) -> None:
        self.calls.append(("rebase", str(repo), onto))

    async def push(self, repo, branch: str, set_upstream: bool = True) -> None:
        self.calls.append(("push", str(repo), branch))


class FakeSessions:
    """Session controller double keeping sessions and windows in memory."""

    def __init__(self):
        self.sessions: dict[str, dict[str, Any]] = {}
        self.commands: list[tuple[str, str, str]] = []
        self.attached: list[str] = []
        self.fail_kill = False

    async def ensure_session(self, slot_id, start_directory=None, env=None) -> bool:
        if slot_id in self.sessions:
            return False
        self.sessions[slot_id] = {
            "start_directory": start_directory,
            "env": dict(env or {}),
            "windows": {SHELL_WINDOW},
        }
        return True

    async def session_exists(self, slot_id) -> bool:
        return slot_id in self.sessions

    async def run_command(self, slot_id, command, window=None) -> None:
        if slot_id not in self.sessions:
            raise SessionError(f"tmux session 'slot-{slot_id}' does not exist")
        window = window or SHELL_WINDOW
        self.sessions[slot_id]["windows"].add(window)
        self.commands.append((slot_id, window, command))

    async def agent_alive(self, slot_id) -> bool:
        session = self.sessions.get(slot_id)
        return session is not None and AGENT_WINDOW in session["windows"]

    def close_agent(self, slot_id) -> None:
        self.sessions[slot_id]["windows"].discard(AGENT_WINDOW)

    async def kill(self, slot_id) -> bool:
        if self.fail_kill:
            raise SessionError("tmux kill-session failed: server not responding")
        return self.sessions.pop(slot_id, None) is not None

    def attach(self, slot_id) -> int:
        self.attached.append(slot_id)
        return 0


def write_repo(path: Path, config: dict[str, Any] | None) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / "stack.py").write_text(STACK_SCRIPT)
    if config is not None:
        (path / ".slot-orchestrator.yaml").write_text(yaml.safe_dump(config))
    return path


@pytest.fixture
def stack_config() -> dict[str, Any]:
    return {
        "stack": f"{sys.executable} stack.py",
        "setup": ["echo preparing", "touch .ready"],
        "port_overrides": {"API_PORT": 5001},
        "base_branch": "main",
    }


@pytest.fixture
def source_repo(tmp_path: Path, stack_config: dict[str, Any]) -> Path:
    """Repository with a project configuration and a runnable stack."""
    return write_repo(tmp_path / "source", stack_config)


@pytest.fixture
def bare_repo(tmp_path: Path) -> Path:
    """Repository without a project configuration."""
    return write_repo(tmp_path / "bare", None)


@pytest.fixture
def orchestrator_config(tmp_path: Path) -> OrchestratorConfig:
    return OrchestratorConfig(
        slots_dir=str(tmp_path / "slots"),
        log_dir=str(tmp_path / "logs"),
        check_port_binding=False,
        terminate_grace_seconds=2.0,
        readiness_timeout_seconds=30.0,
        health_check_interval=0.05,
    )


@pytest.fixture
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture
def fake_sessions() -> FakeSessions:
    return FakeSessions()


@pytest.fixture
def logging_manager(tmp_path: Path) -> LoggingManager:
    manager = LoggingManager(log_dir=tmp_path / "logs", log_level="WARNING")
    yield manager
    manager.close()


@pytest.fixture
def manager(orchestrator_config, fake_git, fake_sessions, logging_manager):
    """SlotManager with real process supervision and fake git/tmux."""
    slot_manager = SlotManager(
        orchestrator_config,
        supervisor=ProcessSupervisor(terminate_grace=2.0, poll_interval=0.05),
        sessions=fake_sessions,
        git=fake_git,
        logging_manager=logging_manager,
    )
    yield slot_manager

    # Kill stacks a failing test left behind.
    for entry in slot_manager._slots.values():
        if entry.process is not None and ProcessSupervisor.is_alive(entry.process.pid):
            try:
                os.killpg(entry.process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass


@pytest.fixture
def clone_failure() -> GitError:
    return GitError("git clone failed (exit 128): repository not found")


@pytest.fixture(name="wait_until")
def wait_until_fixture():
    return wait_until


@pytest.fixture
def make_repo():
    return write_repo
