"""Git operations used as slot lifecycle steps."""

import asyncio
import logging
from pathlib import Path

from .errors import GitError

logger = logging.getLogger(__name__)


class GitClient:
    """Thin async wrapper around the git CLI."""

    def __init__(self, executable: str = "git"):
        self.executable = executable

    async def run(self, *args: str, cwd: str | Path | None = None) -> str:
        """Run git and return its stripped stdout.

        Raises:
            GitError: If git cannot be started or exits non-zero
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                cwd=str(cwd) if cwd else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GitError(f"failed to run git: {e}") from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise GitError(
                f"git {' '.join(args)} failed (exit {process.returncode}): "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace").strip()

    async def clone(self, source: str, target: str | Path) -> None:
        """Clone ``source`` (local path or remote URL) into ``target``."""
        logger.info(f"Cloning {source} into {target}")
        await self.run("clone", source, str(target))

    async def branch_exists(self, repo: str | Path, branch: str) -> bool:
        try:
            await self.run("rev-parse", "--verify", "--quiet", branch, cwd=repo)
        except GitError:
            try:
                await self.run("rev-parse", "--verify", "--quiet", f"origin/{branch}", cwd=repo)
            except GitError:
                return False
        return True

    async def checkout(self, repo: str | Path, branch: str, create: bool = False) -> None:
        if create:
            await self.run("checkout", "-b", branch, cwd=repo)
        else:
            await self.run("checkout", branch, cwd=repo)

    async def current_branch(self, repo: str | Path) -> str:
        return await self.run("rev-parse", "--abbrev-ref", "HEAD", cwd=repo)

    async def fetch(self, repo: str | Path) -> None:
        await self.run("fetch", "origin", cwd=repo)

    async def rebase(self, repo: str | Path, onto: str) -> None:
        await self.run("rebase", f"origin/{onto}", cwd=repo)

    async def push(self, repo: str | Path, branch: str, set_upstream: bool = True) -> None:
        if set_upstream:
            await self.run("push", "-u", "origin", branch, cwd=repo)
        else:
            await self.run("push", "origin", branch, cwd=repo)
