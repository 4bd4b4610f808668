"""
Working-copy management with the ``git`` command line.

Clones are shallow. An existing checkout is fetched and hard-reset to the
remote head instead of being cloned again. Subprocesses run without a
terminal prompt so a private (or missing) repository fails instead of
waiting for credentials, and they are killed when the job is cancelled.
"""

import asyncio
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from codewiki.errors import CloneError

logger = logging.getLogger(__name__)


@dataclass
class CloneResult:
    """Commit checked out in the working copy."""
    commit_sha: str
    branch: str


class CloneSource(ABC):
    """Provides a working copy of a repository at its current head."""

    @abstractmethod
    async def clone(self, clone_url: str, dest: Path) -> CloneResult:
        """
        Clone ``clone_url`` into ``dest`` or update the checkout already there.

        Raises:
            CloneError: if the repository cannot be fetched.
        """


class GitCloner(CloneSource):
    """Clone source using the ``git`` executable."""

    def __init__(self, timeout: float = 600.0, git_binary: str = "git"):
        self.timeout = timeout
        self.git_binary = git_binary

    async def clone(self, clone_url: str, dest: Path) -> CloneResult:
        dest = Path(dest)
        if (dest / ".git").is_dir():
            logger.info(f"Updating working copy at {dest}")
            await self._git(["fetch", "--depth", "1", "origin"], cwd=dest)
            await self._git(["reset", "--hard", "FETCH_HEAD"], cwd=dest)
            await self._git(["clean", "-fdx"], cwd=dest)
        else:
            if dest.exists():
                logger.warning(f"Removing non-git directory at {dest} before cloning")
                shutil.rmtree(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Cloning {clone_url} into {dest}")
            await self._git(["clone", "--depth", "1", clone_url, str(dest)])

        commit_sha = (await self._git(["rev-parse", "HEAD"], cwd=dest)).strip()
        branch = (await self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=dest)).strip()
        return CloneResult(commit_sha=commit_sha, branch=branch or "HEAD")

    async def _git(self, args: List[str], cwd: Optional[Path] = None) -> str:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        command = " ".join(["git"] + args[:1])

        try:
            proc = await asyncio.create_subprocess_exec(
                self.git_binary,
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise CloneError(f"Could not run git: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await _kill(proc)
            raise CloneError(f"{command} timed out after {self.timeout:.0f}s")
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        if proc.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise CloneError(f"{command} failed: {message or f'exit code {proc.returncode}'}")
        return stdout.decode("utf-8", errors="replace")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()
