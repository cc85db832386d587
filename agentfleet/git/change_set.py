"""Change-set inspection for reviewing delivered work."""

import logging
from pathlib import Path
from typing import Optional

import git
from git import Repo
from pydantic import BaseModel

logger = logging.getLogger(__name__)

MAX_DIFF_CHARS = 20000


class FileChange(BaseModel):
    """One changed file."""
    file_path: str
    change_type: str  # "modified", "added", "deleted", "untracked"


class ChangeSet(BaseModel):
    """Working-tree changes of a task's affected files."""
    files: list[FileChange] = []
    diff: str = ""
    truncated: bool = False

    def render(self) -> str:
        """Text form for a review prompt."""
        if not self.files:
            return ""
        lines = [f"- {change.file_path} ({change.change_type})" for change in self.files]
        text = "\n".join(lines)
        if self.diff:
            text += f"\n\n```diff\n{self.diff}\n```"
        if self.truncated:
            text += "\n(diff truncated)"
        return text


class ChangeSetInspector:
    """Reads uncommitted changes from a project's git repository."""

    def __init__(self, max_diff_chars: int = MAX_DIFF_CHARS):
        self.max_diff_chars = max_diff_chars

    def open_repo(self, working_directory: Optional[str]) -> Optional[Repo]:
        """
        Open the repository containing a working directory.

        Returns:
            Repo, or None if the directory is not inside a git repository
        """
        if not working_directory or not Path(working_directory).is_dir():
            return None
        try:
            return Repo(working_directory)
        except (git.InvalidGitRepositoryError, git.NoSuchPathError):
            logger.debug(f"No git repository at {working_directory}")
            return None

    def inspect(self, working_directory: Optional[str], affected_files: list[str]) -> Optional[ChangeSet]:
        """
        Collect the diff of affected files against HEAD, plus untracked files.

        With no affected files every change in the repository is included.

        Args:
            working_directory: Project working directory
            affected_files: Paths relative to the working directory

        Returns:
            ChangeSet, or None when there is no repository to inspect
        """
        repo = self.open_repo(working_directory)
        if repo is None:
            return None

        paths = list(affected_files or [])
        try:
            has_head = repo.head.is_valid()
            files: list[FileChange] = []
            diff_text = ""

            if has_head:
                for item in repo.head.commit.diff(None, paths=paths or None):
                    if item.new_file:
                        change_type = "added"
                    elif item.deleted_file:
                        change_type = "deleted"
                    else:
                        change_type = "modified"
                    files.append(FileChange(file_path=item.b_path or item.a_path, change_type=change_type))
                diff_text = repo.git.diff("HEAD", "--", *paths) if paths else repo.git.diff("HEAD")

            wanted = set(paths)
            for untracked in repo.untracked_files:
                if not wanted or untracked in wanted:
                    files.append(FileChange(file_path=untracked, change_type="untracked"))
        except git.GitCommandError as e:
            logger.warning(f"Failed to read change set in {working_directory}: {e}")
            return None

        truncated = len(diff_text) > self.max_diff_chars
        return ChangeSet(
            files=files,
            diff=diff_text[: self.max_diff_chars],
            truncated=truncated,
        )
