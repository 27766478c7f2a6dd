import subprocess
from pathlib import Path

import pytest

from ralph.errors import VersionControlError
from ralph.vcs import GitRepository


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def test_commit_all_stages_everything(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)
    repo = GitRepository(tmp_path)
    (tmp_path / "README.md").write_text("changed\n", encoding="utf-8")
    (tmp_path / "new.py").write_text("x = 1\n", encoding="utf-8")

    assert sorted(repo.changed_files()) == ["README.md", "new.py"]
    commit_hash = repo.commit_all("feat: [US-001] - Add module")

    assert commit_hash is not None and len(commit_hash) == 40
    assert repo.changed_files() == []
    assert "feat: [US-001] - Add module" in repo.recent_history(5)
    assert repo.recent_history(0) == ""
    assert repo.current_branch()


def test_commit_all_with_clean_tree_returns_none(tmp_path: Path) -> None:
    _init_git_repo(tmp_path)

    assert GitRepository(tmp_path).commit_all("nothing") is None


def test_without_git_commits_are_skipped(tmp_path: Path) -> None:
    repo = GitRepository(tmp_path)
    (tmp_path / "file.txt").write_text("x\n", encoding="utf-8")

    assert not repo.git_enabled
    assert repo.commit_all("noop") is None
    assert repo.changed_files() == []
    assert repo.recent_history() == ""
    assert repo.current_branch() is None
    with pytest.raises(VersionControlError):
        repo._run_git(["status"])
