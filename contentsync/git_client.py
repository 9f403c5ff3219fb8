"""Remote repository access through the git CLI."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path
from typing import TypeVar

from contentsync.errors import CloneFailed, RepositoryError, RepositoryUnreachable
from contentsync.retry import RetryPolicy, retry_async


logger = logging.getLogger(__name__)

T = TypeVar("T")

_SSH_URL_RE = re.compile(r"^[\w.-]+@[\w.-]+:[\w.-]+/[\w.-]+\.git$")
_HTTPS_URL_RE = re.compile(r"^https://[\w.-]+/[\w.-]+/[\w.-]+\.git$")
_COMMIT_RE = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")


class GitCommandError(RepositoryError):
    def __init__(self, args: Sequence[str], returncode: int | None, stderr: str) -> None:
        detail = stderr.strip()[:500] or "no stderr"
        super().__init__(f"git {' '.join(args)} exited with {returncode}: {detail}")
        self.returncode = returncode
        self.stderr = stderr


def _has_checkout(destination: Path) -> bool:
    """True when the working tree holds anything besides git metadata."""
    if not destination.is_dir():
        return False
    return any(entry.name != ".git" for entry in destination.iterdir())


class RepositoryClient:
    """Wraps git for shallow sparse clones and remote revision lookups."""

    def __init__(
        self,
        *,
        timeout: float = 120.0,
        query_timeout: float = 10.0,
        retries: int = 3,
        retry_delay: float = 2.0,
        git_binary: str = "git",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.timeout = timeout
        self.query_timeout = query_timeout
        self.policy = RetryPolicy(attempts=retries, base_delay=retry_delay)
        self._git = git_binary
        self._sleep = sleep

    async def _run(
        self,
        *args: str,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run a git command and return its stdout, raising on failure or timeout."""
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        try:
            proc = await asyncio.create_subprocess_exec(
                self._git,
                *args,
                cwd=str(cwd) if cwd is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError:
            raise RepositoryError(
                f"{self._git!r} is not installed or not on PATH"
            ) from None

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout or self.timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise GitCommandError(
                args, None, f"timed out after {timeout or self.timeout:.0f}s"
            ) from None

        if proc.returncode != 0:
            raise GitCommandError(args, proc.returncode, stderr.decode(errors="replace"))
        return stdout.decode(errors="replace")

    @staticmethod
    def validate_url(url: str) -> bool:
        """Accept only scp-like SSH or HTTPS URLs ending in ``.git``."""
        if not url:
            return False
        return bool(_SSH_URL_RE.match(url) or _HTTPS_URL_RE.match(url))

    async def remote_revision(self, url: str, branch: str) -> str:
        """Return the commit id ``branch`` points to on the remote, without cloning."""
        try:
            output = await self._run("ls-remote", url, branch, timeout=self.query_timeout)
        except RepositoryError as exc:
            raise RepositoryUnreachable(f"Failed to get remote commit for {url}: {exc}") from exc

        for line in output.splitlines():
            commit, _, ref = line.partition("\t")
            if ref in {branch, f"refs/heads/{branch}", f"refs/tags/{branch}"} or not ref:
                if _COMMIT_RE.match(commit.strip()):
                    return commit.strip()
        first = output.strip().split("\t", 1)[0]
        if _COMMIT_RE.match(first):
            return first
        raise RepositoryUnreachable(f"Branch {branch!r} not found on {url}")

    async def clone_sparse(
        self,
        url: str,
        branch: str,
        destination: Path,
        path_filters: Sequence[str],
    ) -> None:
        """Shallow, blob-filtered clone restricted to ``path_filters``."""
        if destination.exists():
            await asyncio.to_thread(shutil.rmtree, destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        logger.info("Cloning %s (%s) into %s", url, branch, destination)
        try:
            await self._run(
                "clone",
                "--depth",
                "1",
                "--branch",
                branch,
                "--filter=blob:none",
                "--sparse",
                url,
                str(destination),
            )
            if path_filters:
                patterns = [f"/{path.strip('/')}" for path in path_filters]
                await self._run(
                    "sparse-checkout", "set", "--no-cone", *patterns, cwd=destination
                )
        except RepositoryError as exc:
            raise CloneFailed(f"Clone of {url} failed: {exc}") from exc

        if not _has_checkout(destination):
            raise CloneFailed(f"Clone of {url} failed: {destination} was not populated")

    async def head_revision(self, repo_dir: Path) -> str | None:
        try:
            output = await self._run(
                "rev-parse", "HEAD", cwd=repo_dir, timeout=self.query_timeout
            )
        except RepositoryError as exc:
            logger.warning("Could not read HEAD of %s: %s", repo_dir, exc)
            return None
        value = output.strip()
        return value or None

    async def retry(self, operation: Callable[[], Awaitable[T]], context: str) -> T:
        return await retry_async(
            operation, context=context, policy=self.policy, sleep=self._sleep
        )
