from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from maestro.errors import WorkspaceAcquireFailure, WorkspaceError

logger = logging.getLogger(__name__)

_FILES_CHANGED_RE = re.compile(r"(\d+) files? changed")


@dataclass(slots=True)
class Workspace:
    key: str
    path: Path
    branch: str | None
    created: bool
    isolated: bool


class WorkspaceManager:
    """Per-task git worktrees under ``<repo>/<root>/<key>`` on branch ``<prefix><key>``."""

    def __init__(
        self,
        repo_root: Path,
        *,
        root: str = ".agent-worktrees",
        branch_prefix: str = "bd-",
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.worktree_root = self.repo_root / root
        self.branch_prefix = branch_prefix

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", *args],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except OSError as exc:
            raise WorkspaceError(f"git unavailable: {exc}") from exc
        if check and proc.returncode != 0:
            raise WorkspaceError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    @staticmethod
    def sanitize_key(value: str) -> str:
        sanitized = re.sub(r"[^a-zA-Z0-9._-]+", "-", value).strip("-.")
        return sanitized or "workspace"

    def key_for(self, orchestration_id: str, task_id: str) -> str:
        return self.sanitize_key(f"{orchestration_id}-{task_id}")

    def path_for(self, key: str) -> Path:
        return self.worktree_root / key

    def branch_for(self, key: str) -> str:
        return f"{self.branch_prefix}{key}"

    def is_git_repo(self) -> bool:
        try:
            proc = self._run_git(["rev-parse", "--is-inside-work-tree"], check=False)
        except WorkspaceError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def shared(self, key: str) -> Workspace:
        return Workspace(key=key, path=self.repo_root, branch=None, created=False, isolated=False)

    def acquire(self, key: str) -> Workspace:
        path = self.path_for(key)
        branch = self.branch_for(key)
        if path.exists():
            return Workspace(key=key, path=path, branch=branch, created=False, isolated=True)
        if not self.is_git_repo():
            raise WorkspaceAcquireFailure(f"{self.repo_root} is not a git repository")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise WorkspaceAcquireFailure(f"Could not create {path.parent}: {exc}") from exc
        proc = self._run_git(["worktree", "add", "-b", branch, str(path)], check=False)
        if proc.returncode != 0 and "already exists" in proc.stderr:
            proc = self._run_git(["worktree", "add", str(path), branch], check=False)
        if proc.returncode != 0:
            raise WorkspaceAcquireFailure(
                f"Could not create worktree {path}: {proc.stderr.strip() or proc.stdout.strip()}"
            )
        logger.info("created worktree %s on %s", path, branch)
        return Workspace(key=key, path=path, branch=branch, created=True, isolated=True)

    def acquire_or_shared(self, key: str) -> Workspace:
        try:
            return self.acquire(key)
        except WorkspaceError as exc:
            logger.warning("using shared project root for %s: %s", key, exc)
            return self.shared(key)

    def release(self, key: str) -> None:
        path = self.path_for(key)
        if path.exists():
            proc = self._run_git(["worktree", "remove", "--force", str(path)], check=False)
            if proc.returncode != 0:
                logger.warning("worktree remove failed for %s: %s", path, proc.stderr.strip())
                shutil.rmtree(path, ignore_errors=True)
        if self.is_git_repo():
            self._run_git(["worktree", "prune"], check=False)

    def current_branch(self) -> str:
        return self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]).stdout.strip()

    def diff(self, branch: str) -> str:
        return self._run_git(["diff", f"HEAD...{branch}"]).stdout

    def diff_stat(self, branch: str) -> tuple[str, int]:
        try:
            output = self._run_git(["diff", "--stat", f"HEAD...{branch}"]).stdout
        except WorkspaceError as exc:
            logger.debug("diff stat unavailable for %s: %s", branch, exc)
            return "", 0
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        if not lines:
            return "0 files changed", 0
        summary = lines[-1]
        match = _FILES_CHANGED_RE.search(summary)
        return summary, int(match.group(1)) if match else 0

    def merge(self, key: str, branch: str, message: str) -> str:
        """Merge ``branch`` into the current branch, then drop its worktree and branch."""
        target = self.current_branch()
        self._run_git(["merge", "--no-ff", "-m", message, branch])
        self.release(key)
        proc = self._run_git(["branch", "-d", branch], check=False)
        if proc.returncode != 0:
            logger.warning("could not delete merged branch %s: %s", branch, proc.stderr.strip())
        return target

    def discard(self, key: str, branch: str | None) -> None:
        self.release(key)
        if branch:
            proc = self._run_git(["branch", "-D", branch], check=False)
            if proc.returncode != 0:
                logger.warning("could not delete branch %s: %s", branch, proc.stderr.strip())
