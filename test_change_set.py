"""Tests for change-set inspection of a project repository."""

import pytest
from git import Actor, Repo

from agentfleet.git.change_set import ChangeSetInspector


@pytest.fixture
def repo_dir(tmp_path):
    repo = Repo.init(tmp_path)
    (tmp_path / "api.py").write_text("def handler():\n    return 200\n")
    (tmp_path / "models.py").write_text("class Order:\n    pass\n")
    repo.index.add(["api.py", "models.py"])
    author = Actor("Fleet", "fleet@example.com")
    repo.index.commit("Initial commit", author=author, committer=author)
    return tmp_path


def test_modified_and_untracked_files(repo_dir):
    (repo_dir / "api.py").write_text("def handler():\n    return 201\n")
    (repo_dir / "new_module.py").write_text("VALUE = 1\n")

    change_set = ChangeSetInspector().inspect(str(repo_dir), [])

    changes = {change.file_path: change.change_type for change in change_set.files}
    assert changes == {"api.py": "modified", "new_module.py": "untracked"}
    assert "return 201" in change_set.diff
    assert "api.py (modified)" in change_set.render()


def test_affected_files_limit_the_change_set(repo_dir):
    (repo_dir / "api.py").write_text("def handler():\n    return 201\n")
    (repo_dir / "models.py").write_text("class Order:\n    id = 1\n")

    change_set = ChangeSetInspector().inspect(str(repo_dir), ["models.py"])

    assert [change.file_path for change in change_set.files] == ["models.py"]
    assert "return 201" not in change_set.diff


def test_long_diff_is_truncated(repo_dir):
    (repo_dir / "api.py").write_text("x = 1\n" * 500)

    change_set = ChangeSetInspector(max_diff_chars=100).inspect(str(repo_dir), ["api.py"])

    assert change_set.truncated is True
    assert len(change_set.diff) == 100
    assert "(diff truncated)" in change_set.render()


def test_clean_repository_renders_nothing(repo_dir):
    change_set = ChangeSetInspector().inspect(str(repo_dir), [])

    assert change_set.files == []
    assert change_set.render() == ""


def test_no_repository(tmp_path):
    inspector = ChangeSetInspector()

    assert inspector.inspect(str(tmp_path), ["api.py"]) is None
    assert inspector.inspect(None, []) is None
    assert inspector.inspect(str(tmp_path / "missing"), []) is None
