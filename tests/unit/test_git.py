"""Unit tests for the git client with a mocked subprocess layer."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from slot_orchestrator.errors import GitError
from slot_orchestrator.git import GitClient


def make_process(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> MagicMock:
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    return process


@pytest.fixture
def exec_mock():
    with patch("slot_orchestrator.git.asyncio.create_subprocess_exec", new_callable=AsyncMock) as m:
        m.return_value = make_process()
        yield m


class TestGitClient:
    @pytest.mark.asyncio
    async def test_run_returns_stdout(self, exec_mock):
        exec_mock.return_value = make_process(stdout=b"feature/x\n")

        branch = await GitClient().current_branch("/repo")

        assert branch == "feature/x"
        args, kwargs = exec_mock.call_args
        assert args == ("git", "rev-parse", "--abbrev-ref", "HEAD")
        assert kwargs["cwd"] == "/repo"

    @pytest.mark.asyncio
    async def test_failure_raises_git_error(self, exec_mock):
        exec_mock.return_value = make_process(returncode=128, stderr=b"fatal: not a git repository")

        with pytest.raises(GitError, match="not a git repository"):
            await GitClient().fetch("/repo")

    @pytest.mark.asyncio
    async def test_missing_executable(self, exec_mock):
        exec_mock.side_effect = FileNotFoundError("git")

        with pytest.raises(GitError, match="failed to run git"):
            await GitClient().clone("https://example.com/repo.git", "/tmp/slots/alpha")

    @pytest.mark.asyncio
    async def test_clone(self, exec_mock):
        await GitClient().clone("/src/repo", "/tmp/slots/alpha")

        assert exec_mock.call_args.args == ("git", "clone", "/src/repo", "/tmp/slots/alpha")

    @pytest.mark.asyncio
    async def test_checkout_new_branch(self, exec_mock):
        await GitClient().checkout("/repo", "feature/x", create=True)

        assert exec_mock.call_args.args == ("git", "checkout", "-b", "feature/x")

    @pytest.mark.asyncio
    async def test_branch_exists_falls_back_to_origin(self, exec_mock):
        exec_mock.side_effect = [make_process(returncode=1), make_process()]

        assert await GitClient().branch_exists("/repo", "feature/x") is True
        assert exec_mock.call_args.args[-1] == "origin/feature/x"

    @pytest.mark.asyncio
    async def test_branch_missing(self, exec_mock):
        exec_mock.side_effect = [make_process(returncode=1), make_process(returncode=1)]

        assert await GitClient().branch_exists("/repo", "feature/x") is False

    @pytest.mark.asyncio
    async def test_rebase_onto_origin(self, exec_mock):
        await GitClient().rebase("/repo", "main")

        assert exec_mock.call_args.args == ("git", "rebase", "origin/main")

    @pytest.mark.asyncio
    async def test_push_sets_upstream(self, exec_mock):
        await GitClient().push("/repo", "feature/x")

        assert exec_mock.call_args.args == ("git", "push", "-u", "origin", "feature/x")
