from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from ralph.errors import VersionControlError

logger = logging.getLogger(__name__)


class GitRepository:
    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self._git_enabled = self._is_git_repo()

    @property
    def git_enabled(self) -> bool:
        return self._git_enabled

    def _is_git_repo(self) -> bool:
        try:
            proc = subprocess.run(
                ["git", "--no-pager", "rev-parse", "--is-inside-work-tree"],
                cwd=self.repo_root,
                text=True,
                capture_output=True,
            )
        except FileNotFoundError:
            return False
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def _run_git(self, args: list[str], check: bool = True) -> subprocess.CompletedProcess[str]:
        if not self.git_enabled:
            raise VersionControlError("No git repository found. Commit operations are disabled.")
        proc = subprocess.run(
            ["git", "--no-pager", *args],
            cwd=self.repo_root,
            text=True,
            capture_output=True,
        )
        if check and proc.returncode != 0:
            raise VersionControlError(proc.stderr.strip() or proc.stdout.strip())
        return proc

    def current_branch(self) -> str | None:
        if not self.git_enabled:
            return None
        proc = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        branch = proc.stdout.strip()
        return branch if proc.returncode == 0 and branch else None

    def recent_history(self, limit: int = 10) -> str:
        if not self.git_enabled or limit <= 0:
            return ""
        proc = self._run_git(["log", "--oneline", f"-n{limit}"], check=False)
        if proc.returncode != 0:
            return ""
        return proc.stdout.strip()

    @staticmethod
    def _status_line_path(status_line: str) -> str:
        candidate = status_line[3:].strip()
        if " -> " in candidate:
            candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
        return candidate.strip('"')

    def changed_files(self) -> list[str]:
        if not self.git_enabled:
            return []
        proc = self._run_git(["status", "--porcelain"], check=True)
        paths: list[str] = []
        for line in proc.stdout.splitlines():
            if not line.strip():
                continue
            path = self._status_line_path(line)
            if path:
                paths.append(path)
        return paths

    def commit_all(self, message: str) -> str | None:
        """Stage every change and commit it; returns None when nothing changed."""
        if not self.git_enabled:
            return None
        if not self.changed_files():
            return None
        self._run_git(["add", "-A"], check=True)
        self._run_git(["commit", "-m", message], check=True)
        commit_hash = self._run_git(["rev-parse", "HEAD"], check=True).stdout.strip()
        logger.info("Committed %s: %s", commit_hash[:10], message)
        return commit_hash
