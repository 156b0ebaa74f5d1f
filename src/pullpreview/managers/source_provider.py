"""Git source provider: produces a local source tree for a repository ref."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from pullpreview.errors import CloneFailedError

if TYPE_CHECKING:
    from pullpreview.managers.process_runner import OutputCallback, ProcessRunner

logger = structlog.get_logger()


async def _discard_output(_chunk: str) -> None:
    return None


class GitSourceProvider:
    """Shallow-clones repositories into temporary directories."""

    def __init__(
        self,
        runner: ProcessRunner,
        workdir: str,
        git_base_url: str = "https://github.com",
        github_token: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._runner = runner
        self._workdir = Path(workdir)
        self._git_base_url = git_base_url.rstrip("/")
        self._github_token = github_token
        self._timeout = timeout

    def repo_url(self, repo_owner: str, repo_name: str, with_token: bool = False) -> str:
        """Clone URL for a repository, optionally carrying the access token."""
        url = f"{self._git_base_url}/{repo_owner}/{repo_name}.git"
        if with_token and self._github_token and "://" in url:
            scheme, rest = url.split("://", 1)
            url = f"{scheme}://x-access-token:{self._github_token}@{rest}"
        return url

    async def clone(
        self,
        repo_owner: str,
        repo_name: str,
        ref: str | None = None,
        on_output: OutputCallback | None = None,
        key: str | None = None,
    ) -> Path:
        """Clone a repository at `ref` (default branch when None).

        The caller owns the returned directory and must discard() it.

        Raises:
            CloneFailedError: Any git step failed.
        """
        output = on_output or _discard_output
        self._workdir.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=f"{repo_name}-", dir=self._workdir))
        clone_url = self.repo_url(repo_owner, repo_name, with_token=True)

        logger.info(
            "Cloning repository", repo=f"{repo_owner}/{repo_name}", ref=ref, path=str(path)
        )
        try:
            # The token-bearing URL never reaches the log stream
            await output(f"\n> git clone --depth 1 {self.repo_url(repo_owner, repo_name)}\n")
            await self._git("clone", ["clone", "--depth", "1", clone_url, str(path)], output, key)
            if ref:
                await output(f"\n> git fetch --depth 1 origin {ref}\n")
                await self._git(
                    "fetch", ["-C", str(path), "fetch", "--depth", "1", "origin", ref], output, key
                )
                await self._git(
                    "checkout", ["-C", str(path), "checkout", "--detach", "FETCH_HEAD"], output, key
                )
        except CloneFailedError:
            await self.discard(path)
            raise
        except OSError as e:
            await self.discard(path)
            raise CloneFailedError(f"Failed to run git: {e}") from e

        return path

    async def _git(
        self, step: str, args: list[str], output: OutputCallback, key: str | None
    ) -> None:
        exit_status = await self._runner.execute(
            ["git", *args], output, key=key, timeout=self._timeout
        )
        if exit_status != 0:
            raise CloneFailedError(f"git {step} failed with exit code {exit_status}")

    async def discard(self, path: Path) -> None:
        """Remove a working tree. Errors are logged, never raised."""
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove source path", path=str(path), error=str(e))
