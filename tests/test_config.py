"""Tests for configuration loading and helpers."""

import io
import tempfile
from pathlib import Path

import pytest

from stowage.config import (
    ArchiveRepositoryConfig,
    PackageConfig,
    ResticRepositoryConfig,
    filter_packages,
    filter_repository,
    find_package_repository_config,
    find_repository_or_fail,
    load_config,
    resolve_package,
    save_config,
    sort_repos_by_type,
)
from stowage.errors import ConfigurationError, NotFoundError

from fakes import make_config, make_repository

CONFIG_YAML = """
hostname: backup-host
min_free_disk_space: 1GB
repositories:
  - name: local
    type: archive
    mirror_repo_names: [offsite]
    config:
      backend: /srv/backups
      compress: true
  - name: offsite
    type: restic
    enabled:
      defaults: true
      prune: false
    config:
      repository: sftp:backup@host:/restic
      password_file: /etc/stowage/restic.pass
packages:
  - name: web
    path: /var/www/{package_name}
    repository_names: [local]
    prune_policy:
      keep_daily: 7
    repository_configs:
      - type: archive
        config:
          packs:
            - name: uploads
              include: ["uploads/**"]
"""


class TestLoadConfig:
    """Test loading configuration files."""

    def test_load(self):
        """Test a full configuration file is parsed into typed models."""
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "config.yaml"
            path.write_text(CONFIG_YAML)

            config = load_config(path)

            assert config.get_hostname() == "backup-host"
            local = find_repository_or_fail(config, "local")
            offsite = find_repository_or_fail(config, "offsite")
            assert isinstance(local.config, ArchiveRepositoryConfig)
            assert local.config.compress is True
            assert isinstance(offsite.config, ResticRepositoryConfig)
            assert config.packages[0].prune_policy.keep_daily == 7

    def test_missing_file(self):
        """Test a missing file raises NotFoundError."""
        with pytest.raises(NotFoundError):
            load_config(Path("/nonexistent/stowage.yaml"))

    def test_invalid_yaml(self):
        """Test malformed YAML raises a configuration error."""
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "config.yaml"
            path.write_text("repositories: [unclosed")
            with pytest.raises(ConfigurationError):
                load_config(path)

    def test_backend_config_must_match_type(self):
        """Test a restic repository with archive options is rejected."""
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "config.yaml"
            path.write_text(
                "repositories:\n"
                "  - name: r\n"
                "    type: restic\n"
                "    config:\n"
                "      backend: /srv\n"
            )
            with pytest.raises(ConfigurationError):
                load_config(path)

    def test_unknown_mirror(self):
        """Test mirrors must reference configured repositories."""
        with pytest.raises(ValueError):
            make_config([make_repository("r1", mirror_repo_names=["missing"])], [])

    def test_self_mirror(self):
        """Test a repository can not mirror itself."""
        with pytest.raises(ValueError):
            make_config([make_repository("r1", mirror_repo_names=["r1"])], [])

    def test_save_round_trip(self):
        """Test saved configuration loads back."""
        config = make_config([make_repository("r1")], [{"name": "web", "path": "/srv/web"}])
        stream = io.StringIO()
        save_config(config, stream)

        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "config.yaml"
            path.write_text(stream.getvalue())
            loaded = load_config(path)

        assert loaded.packages[0].path == "/srv/web"
        assert loaded.repositories[0].name == "r1"


class TestRepositoryHelpers:
    """Test repository selection helpers."""

    def setup_method(self):
        self.config = make_config(
            [
                make_repository("b-restic", "restic"),
                make_repository("a-archive", "archive"),
                make_repository("c-git", "git", enabled={"defaults": True, "backup": False}),
                make_repository("d-archive", "archive", enabled=False),
            ],
            [],
        )

    def test_unknown_repository(self):
        """Test looking up an unknown repository fails."""
        with pytest.raises(ConfigurationError):
            find_repository_or_fail(self.config, "missing")

    def test_filter_by_action(self):
        """Test per-action enablement."""
        git = find_repository_or_fail(self.config, "c-git")
        assert not filter_repository(git, "backup")
        assert filter_repository(git, "restore")
        assert not filter_repository(find_repository_or_fail(self.config, "d-archive"), "restore")

    def test_filter_by_name_and_type(self):
        """Test name globs and type filters."""
        names = [
            r.name for r in self.config.repositories
            if filter_repository(r, "snapshots", include=["*-archive", "b-*"], types=["archive"])
        ]
        assert names == ["a-archive"]

    def test_sort_by_type(self):
        """Test the preferred type sorts first."""
        ordered = sort_repos_by_type(self.config.repositories, "restic")
        assert [r.name for r in ordered] == ["b-restic", "a-archive", "d-archive", "c-git"]


class TestPackageHelpers:
    """Test package selection and templating."""

    def test_filter_packages_narrows_repositories(self):
        """Test selected packages only keep repositories enabled for the action."""
        config = make_config(
            [
                make_repository("r1"),
                make_repository("r2", enabled={"defaults": True, "backup": False}),
            ],
            [
                {"name": "web", "repository_names": ["r1", "r2"]},
                {"name": "db", "task": {"name": "script"}},
                {"name": "old", "enabled": False},
            ],
        )

        packages = filter_packages(config, "backup")

        assert [p.name for p in packages] == ["web", "db"]
        assert packages[0].repository_names == ["r1"]
        assert packages[1].repository_names == ["r1"]
        assert config.packages[0].repository_names == ["r1", "r2"]

    def test_filter_packages_by_task(self):
        """Test the <empty> task pattern."""
        config = make_config(
            [make_repository("r1")],
            [{"name": "web"}, {"name": "db", "task": {"name": "script"}}],
        )
        assert [p.name for p in filter_packages(config, "backup", package_task_names=["<empty>"])] == ["web"]

    def test_unknown_package_repository(self):
        """Test packages referencing unknown repositories fail."""
        config = make_config([make_repository("r1")], [{"name": "web", "repository_names": ["nope"]}])
        with pytest.raises(ConfigurationError):
            filter_packages(config, "backup")

    def test_resolve_package(self):
        """Test package templates are rendered."""
        package = PackageConfig(
            name="web",
            path="/srv/{package_name}",
            restore_path="{temp}/restore",
            include=["{snapshot_id}/**"],
        )
        resolved = resolve_package(package, {"snapshot_id": "abc", "temp": "/tmp/x"})

        assert resolved.path == "/srv/web"
        assert resolved.restore_path == "/tmp/x/restore"
        assert resolved.include == ["abc/**"]

    def test_package_repository_config(self):
        """Test the first matching repository config entry is returned."""
        config = make_config(
            [make_repository("r1"), make_repository("r2")],
            [{
                "name": "web",
                "repository_configs": [
                    {"type": "archive", "names": ["r2"], "config": {"compress": True}},
                    {"type": "archive", "config": {"compress": False}},
                ],
            }],
        )
        package = config.packages[0]

        assert find_package_repository_config(package, find_repository_or_fail(config, "r2")) == {"compress": True}
        assert find_package_repository_config(package, find_repository_or_fail(config, "r1")) == {"compress": False}
