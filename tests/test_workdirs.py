"""Tests for the per-repository working-directory registry."""

from __future__ import annotations

import os

import pytest

from workspace_host.errors import PathError, ValidationError
from workspace_host.workdirs import DirectoryRegistry, validate_repository_id


def test_resolve_creates_default_directory_once(directories, project_root):
    path = directories.resolve("demo")

    assert path == os.path.join(os.path.realpath(project_root), "demo")
    assert os.path.isdir(path)
    assert os.listdir(os.path.realpath(project_root)) == ["demo"]
    assert directories.resolve("demo") == path
    assert len(directories) == 1


def test_resolve_returns_stored_directory_until_evicted(directories):
    home = directories.resolve("demo")
    os.makedirs(os.path.join(home, "src"))
    directories.change_directory("demo", "src")

    assert directories.resolve("demo") == os.path.join(home, "src")
    assert directories.evict("demo") is True
    assert directories.resolve("demo") == home
    assert directories.evict("missing") is False


def test_vanished_directory_is_evicted_on_resolve(directories):
    home = directories.resolve("demo")
    nested = os.path.join(home, "build")
    os.makedirs(nested)
    directories.set("demo", nested)
    os.rmdir(nested)

    assert directories.resolve("demo") == home


class TestChangeDirectory:
    @pytest.fixture
    def app_dir(self, directories) -> str:
        home = directories.resolve("app")
        os.makedirs(os.path.join(home, "src", "components"))
        return home

    def test_relative(self, directories, app_dir):
        assert directories.change_directory("app", "src") == os.path.join(app_dir, "src")
        assert directories.change_directory("app", "components") == os.path.join(
            app_dir, "src", "components"
        )

    def test_parent(self, directories, app_dir):
        directories.change_directory("app", "src/components")
        assert directories.change_directory("app", "..") == os.path.join(app_dir, "src")

    def test_absolute(self, directories, app_dir):
        target = os.path.join(app_dir, "src", "components")
        assert directories.change_directory("app", target) == target

    def test_home(self, directories, app_dir):
        directories.change_directory("app", "src")
        assert directories.change_directory("app", "") == app_dir
        directories.change_directory("app", "src")
        assert directories.change_directory("app", "~") == app_dir
        assert directories.change_directory("app", "~/src") == os.path.join(app_dir, "src")

    def test_missing_target_leaves_directory_unchanged(self, directories, app_dir):
        with pytest.raises(PathError) as exc_info:
            directories.change_directory("app", "nope")

        assert exc_info.value.message == "cd: nope: No such file or directory"
        assert exc_info.value.exit_code == 1
        assert directories.resolve("app") == app_dir

    def test_file_target(self, directories, app_dir):
        open(os.path.join(app_dir, "README.md"), "w").close()
        with pytest.raises(PathError, match="Not a directory"):
            directories.change_directory("app", "README.md")

    def test_outside_project_root_is_rejected(self, directories, app_dir, tmp_path):
        with pytest.raises(PathError, match="Permission denied"):
            directories.change_directory("app", str(tmp_path))
        assert directories.resolve("app") == app_dir

    def test_dash_is_unsupported(self, directories, app_dir):
        with pytest.raises(PathError):
            directories.change_directory("app", "-")


def test_set_rejects_directories_outside_root(directories, tmp_path):
    with pytest.raises(PathError):
        directories.set("demo", str(tmp_path))


def test_set_relative_path_starts_from_current_directory(directories, monkeypatch, tmp_path):
    home = directories.resolve("demo")
    os.makedirs(os.path.join(home, "web", "public"))
    directories.set("demo", "web")
    monkeypatch.chdir(tmp_path)

    assert directories.set("demo", "public") == os.path.join(home, "web", "public")
    assert directories.resolve("demo") == os.path.join(home, "web", "public")


def test_set_relative_path_cannot_escape_root(directories):
    with pytest.raises(PathError, match="Outside of project root"):
        directories.set("demo", "../..")


@pytest.mark.parametrize("repository_id", ["", "..", "../etc", "a/b", "-flag", "x" * 200])
def test_invalid_repository_ids(repository_id):
    with pytest.raises(ValidationError):
        validate_repository_id(repository_id)


@pytest.mark.parametrize("repository_id", ["demo", "my-app", "acme.site_2", "A1"])
def test_valid_repository_ids(repository_id):
    assert validate_repository_id(repository_id) == repository_id


def test_project_root_is_created(tmp_path):
    root = tmp_path / "fresh" / "root"
    registry = DirectoryRegistry(str(root))
    assert root.is_dir()
    assert registry.project_root == os.path.realpath(root)
