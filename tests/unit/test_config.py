"""Unit tests for project root and state directory resolution."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from chainstate import config


@pytest.fixture
def no_git(monkeypatch):
    monkeypatch.setattr(config, "git_toplevel", lambda start=None: None)


class TestResolveRoot:
    """Test cases for resolve_root."""

    def test_explicit_root(self, tmp_path):
        assert config.resolve_root(str(tmp_path)) == tmp_path.resolve()

    def test_explicit_root_must_exist(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            config.resolve_root(tmp_path / "missing")

    def test_explicit_root_wins_over_environment(self, tmp_path, monkeypatch):
        other = tmp_path / "other"
        other.mkdir()
        monkeypatch.setenv(config.PROJECT_ROOT_ENV, str(other))

        assert config.resolve_root(tmp_path) == tmp_path.resolve()

    def test_environment_root(self, tmp_path, monkeypatch):
        monkeypatch.setenv(config.PROJECT_ROOT_ENV, str(tmp_path))
        assert config.resolve_root() == tmp_path.resolve()

    def test_environment_root_must_exist(self, tmp_path, monkeypatch):
        monkeypatch.setenv(config.PROJECT_ROOT_ENV, str(tmp_path / "missing"))

        with pytest.raises(ValueError, match=config.PROJECT_ROOT_ENV):
            config.resolve_root()

    def test_git_toplevel(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config, "git_toplevel", lambda start=None: tmp_path)
        assert config.resolve_root() == tmp_path

    def test_marked_ancestor(self, tmp_path, monkeypatch, no_git):
        (tmp_path / ".analysis").mkdir()
        nested = tmp_path / "src" / "module"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)

        assert config.resolve_root() == tmp_path.resolve()

    def test_falls_back_to_cwd(self, tmp_path, monkeypatch, no_git):
        monkeypatch.setattr(config, "locate_marked_root", lambda start=None: None)
        monkeypatch.chdir(tmp_path)

        assert config.resolve_root() == tmp_path.resolve()


class TestLocateMarkedRoot:
    """Test cases for locate_marked_root."""

    def test_finds_nearest_marker(self, tmp_path):
        (tmp_path / ".analysis").mkdir()
        inner = tmp_path / "pkg"
        (inner / ".analysis").mkdir(parents=True)

        assert config.locate_marked_root(inner / ".analysis") == inner.resolve()

    def test_marker_must_be_a_directory(self, tmp_path):
        project = tmp_path / "project"
        project.mkdir()
        (project / ".analysis").write_text("not a directory", encoding="utf-8")

        result = config.locate_marked_root(project)

        assert result != project.resolve()


class TestGitToplevel:
    """Test cases for git_toplevel."""

    def test_returns_reported_toplevel(self, tmp_path):
        completed = MagicMock(returncode=0, stdout=f"{tmp_path}\n")
        with patch("chainstate.config.subprocess.run", return_value=completed) as mock_run:
            assert config.git_toplevel(tmp_path) == tmp_path.resolve()

        assert mock_run.call_args[0][0] == ["git", "rev-parse", "--show-toplevel"]

    def test_outside_a_work_tree(self, tmp_path):
        completed = MagicMock(returncode=128, stdout="")
        with patch("chainstate.config.subprocess.run", return_value=completed):
            assert config.git_toplevel(tmp_path) is None

    def test_git_not_installed(self, tmp_path):
        with patch("chainstate.config.subprocess.run", side_effect=FileNotFoundError("git")):
            assert config.git_toplevel(tmp_path) is None


class TestStateRoot:
    """Test cases for state_root."""

    def test_default(self, tmp_path):
        assert config.state_root(tmp_path) == tmp_path / ".analysis" / ".state"

    def test_relative_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv(config.STATE_DIR_ENV, "build/chain-state")
        assert config.state_root(tmp_path) == tmp_path / "build" / "chain-state"

    def test_absolute_override(self, tmp_path, monkeypatch):
        target = tmp_path / "elsewhere"
        monkeypatch.setenv(config.STATE_DIR_ENV, str(target))

        assert config.state_root(Path("/ignored")) == target
