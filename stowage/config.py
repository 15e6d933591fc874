"""Configuration management for stowage."""

import socket
import typing as t
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .errors import ConfigurationError, NotFoundError
from .retention import RetentionPolicy
from .util.logging import get_logger
from .util.patterns import create_pattern_filter, create_task_filter, render

logger = get_logger(__name__)

RepositoryType = t.Literal["archive", "git", "restic"]
RepositoryAction = t.Literal["backup", "init", "prune", "restore", "snapshots"]

DEFAULT_CONFIG_PATH = Path.home() / ".config/stowage/config.yaml"


class ArchiveRepositoryConfig(BaseModel):
    """Content-store repository: tar packs plus ``meta.json`` per snapshot."""

    backend: str = Field(description="Local path or sftp://user@host[:port]/path URL")
    compress: bool = Field(default=False, description="Gzip packs by default")
    ssh_key_file: t.Optional[Path] = Field(default=None, description="Private key for SFTP backends")

    class Config:
        """Pydantic configuration."""

        extra = "forbid"


class GitRepositoryConfig(BaseModel):
    """Version-control repository: one branch per package, one tag per snapshot."""

    repo: str = Field(description="Remote URL or local path of the repository")

    class Config:
        """Pydantic configuration."""

        extra = "forbid"


class ResticRepositoryConfig(BaseModel):
    """External-archiver repository driven through the restic CLI."""

    repository: str = Field(description="Restic repository location")
    password: t.Optional[str] = Field(default=None, description="Repository password")
    password_file: t.Optional[Path] = Field(default=None, description="File holding the password")
    env: t.Dict[str, str] = Field(default_factory=dict, description="Extra environment variables")
    restic_path: str = Field(default="restic", description="Path to the restic binary")

    class Config:
        """Pydantic configuration."""

        extra = "forbid"


REPOSITORY_CONFIG_MODELS: t.Dict[str, t.Type[BaseModel]] = {
    "archive": ArchiveRepositoryConfig,
    "git": GitRepositoryConfig,
    "restic": ResticRepositoryConfig,
}

BackendConfig = t.Union[ArchiveRepositoryConfig, GitRepositoryConfig, ResticRepositoryConfig]


class RepositoryEnabledConfig(BaseModel):
    """Per-action switches for a repository."""

    defaults: bool = True
    backup: t.Optional[bool] = None
    init: t.Optional[bool] = None
    prune: t.Optional[bool] = None
    restore: t.Optional[bool] = None
    snapshots: t.Optional[bool] = None

    def is_enabled(self, action: t.Optional[str]) -> bool:
        value = getattr(self, action, None) if action else None
        return self.defaults if value is None else value


class RepositoryConfig(BaseModel):
    """One configured backend instance."""

    name: str = Field(description="Unique repository name")
    type: RepositoryType = Field(description="Backend kind")
    mirror_repo_names: t.List[str] = Field(default_factory=list, description="Repositories receiving copies")
    enabled: t.Union[bool, RepositoryEnabledConfig] = Field(default=True)
    config: BackendConfig

    @model_validator(mode="after")
    def check_backend_config(self) -> "RepositoryConfig":
        expected = REPOSITORY_CONFIG_MODELS[self.type]
        if not isinstance(self.config, expected):
            raise ValueError(f"Repository '{self.name}' of type '{self.type}' needs a {expected.__name__}")
        return self


class PackageRepositoryConfig(BaseModel):
    """Package options for repositories of one type (optionally by name)."""

    type: RepositoryType
    names: t.List[str] = Field(default_factory=list)
    config: t.Dict[str, t.Any] = Field(default_factory=dict)


class TaskConfig(BaseModel):
    """Task hook producing or consuming a package's working copy."""

    name: str = Field(description="Task kind, e.g. 'script'")
    config: t.Dict[str, t.Any] = Field(default_factory=dict)


class PackageConfig(BaseModel):
    """A named set of files backed up together."""

    name: str = Field(description="Unique package name")
    enabled: bool = True
    path: t.Optional[str] = Field(default=None, description="Source directory (templated)")
    restore_path: t.Optional[str] = Field(default=None, description="Restore target (templated)")
    include: t.Optional[t.List[str]] = Field(default=None, description="Include globs (templated)")
    exclude: t.Optional[t.List[str]] = Field(default=None, description="Exclude globs (templated)")
    repository_names: t.Optional[t.List[str]] = Field(default=None, description="Target repositories")
    prune_policy: t.Optional[RetentionPolicy] = None
    repository_configs: t.List[PackageRepositoryConfig] = Field(default_factory=list)
    task: t.Optional[TaskConfig] = None


class ReportConfig(BaseModel):
    """Command run after a backup with the run summary on stdin."""

    name: t.Optional[str] = None
    when: t.Literal["success", "error", "always"] = "always"
    run: t.Union[str, t.List[str]]


class StowageConfig(BaseModel):
    """Main configuration for stowage."""

    hostname: t.Optional[str] = Field(default=None, description="Host name stored in snapshots")
    temp_dir: t.Optional[Path] = Field(default=None, description="Base directory for scratch data")
    min_free_disk_space: t.Optional[t.Union[int, str]] = Field(
        default=None, description="Minimum free space required in scratch and local targets"
    )
    concurrency: int = Field(default=4, ge=1, description="Packages processed at once")
    log_level: str = Field(default="INFO", description="Logging level")

    repositories: t.List[RepositoryConfig] = Field(default_factory=list)
    packages: t.List[PackageConfig] = Field(default_factory=list)
    prune_policy: t.Optional[RetentionPolicy] = Field(default=None, description="Default retention policy")
    reports: t.List[ReportConfig] = Field(default_factory=list)

    class Config:
        """Pydantic configuration."""

        validate_assignment = True

    @model_validator(mode="after")
    def check_references(self) -> "StowageConfig":
        repo_names = [r.name for r in self.repositories]
        if len(set(repo_names)) != len(repo_names):
            raise ValueError("Repository names must be unique")
        package_names = [p.name for p in self.packages]
        if len(set(package_names)) != len(package_names):
            raise ValueError("Package names must be unique")
        for repo in self.repositories:
            for mirror in repo.mirror_repo_names:
                if mirror not in repo_names:
                    raise ValueError(f"Repository '{repo.name}' mirrors unknown repository '{mirror}'")
                if mirror == repo.name:
                    raise ValueError(f"Repository '{repo.name}' can not mirror itself")
        return self

    def get_hostname(self) -> str:
        return self.hostname or socket.gethostname()


def load_config(config_path: t.Optional[Path] = None) -> StowageConfig:
    """Load configuration from a YAML file.

    Raises:
        NotFoundError: If the file does not exist
        ConfigurationError: If the file is not valid YAML or fails validation
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    if not config_path.exists():
        raise NotFoundError(f"Configuration file not found: {config_path}")

    yaml = YAML(typ="safe")
    try:
        with open(config_path, "r") as f:
            data = yaml.load(f) or {}
        return StowageConfig(**data)
    except YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}:\n{e}") from e


def save_config(config: StowageConfig, stream: t.Any) -> None:
    """Dump configuration as YAML to a path or writable stream."""
    yaml = YAML()
    yaml.default_flow_style = False
    data = config.model_dump(mode="json", exclude_none=True)

    if isinstance(stream, Path):
        stream.parent.mkdir(parents=True, exist_ok=True)
        with open(stream, "w") as f:
            yaml.dump(data, f)
    else:
        yaml.dump(data, stream)


def find_repository_or_fail(config: StowageConfig, name: str) -> RepositoryConfig:
    repository = next((r for r in config.repositories if r.name == name), None)
    if repository is None:
        raise ConfigurationError(f"Repository '{name}' not found")
    return repository


def find_package_or_fail(config: StowageConfig, name: str) -> PackageConfig:
    package = next((p for p in config.packages if p.name == name), None)
    if package is None:
        raise ConfigurationError(f"Package '{name}' not found")
    return package


def filter_repository_by_enabled(repository: RepositoryConfig, action: t.Optional[str] = None) -> bool:
    enabled = repository.enabled
    if isinstance(enabled, bool):
        return enabled
    return enabled.is_enabled(action)


def filter_repository(
    repository: RepositoryConfig,
    action: t.Optional[str] = None,
    include: t.Optional[t.Sequence[str]] = None,
    exclude: t.Optional[t.Sequence[str]] = None,
    types: t.Optional[t.Sequence[str]] = None,
) -> bool:
    """Check a repository against enablement, name globs and types."""
    if not filter_repository_by_enabled(repository, action):
        return False
    if include and not create_pattern_filter(include)(repository.name):
        return False
    if exclude and repository.name in exclude:
        return False
    if types and not create_pattern_filter(types)(repository.type):
        return False
    return True


def sort_repos_by_type(
    repositories: t.Sequence[RepositoryConfig],
    first_type: t.Optional[str] = None,
) -> t.List[RepositoryConfig]:
    """Sort repositories by type (``first_type`` first) then by name."""
    return sorted(
        repositories,
        key=lambda r: (r.type != first_type, r.type, r.name),
    )


def ensure_same_repository_type(source: RepositoryConfig, target: RepositoryConfig) -> None:
    if source.type != target.type:
        raise ConfigurationError(
            f"Repository '{target.name}' ({target.type}) can not receive native copies "
            f"from '{source.name}' ({source.type})"
        )


def filter_packages(
    config: StowageConfig,
    action: t.Optional[str] = None,
    package_names: t.Optional[t.Sequence[str]] = None,
    package_task_names: t.Optional[t.Sequence[str]] = None,
    repository_names: t.Optional[t.Sequence[str]] = None,
    repository_types: t.Optional[t.Sequence[str]] = None,
) -> t.List[PackageConfig]:
    """Select enabled packages and narrow their repositories.

    Each returned package carries only the repository names that exist, are
    enabled for ``action`` and pass the name and type filters.
    """
    package_filter = create_pattern_filter(package_names)
    task_filter = create_task_filter(package_task_names)
    repositories = {r.name: r for r in config.repositories}
    packages = []

    for package in config.packages:
        if not package.enabled:
            continue
        if not package_filter(package.name):
            continue
        if not task_filter(package.task.name if package.task else None):
            continue

        names = []
        for name in package.repository_names if package.repository_names is not None else list(repositories):
            repository = repositories.get(name)
            if repository is None:
                raise ConfigurationError(f"Package '{package.name}' references unknown repository '{name}'")
            if filter_repository(repository, action, include=repository_names, types=repository_types):
                names.append(name)

        packages.append(package.model_copy(update={"repository_names": names}))

    return packages


def resolve_package(package: PackageConfig, variables: t.Mapping[str, t.Any]) -> PackageConfig:
    """Render the templated fields of a package."""
    variables = {**variables, "package_name": package.name}
    path = render(package.path, variables) if package.path else None
    variables["path"] = path

    def render_list(values: t.Optional[t.List[str]]) -> t.Optional[t.List[str]]:
        if values is None:
            return None
        return [render(value, variables) for value in values]

    return package.model_copy(update={
        "path": path,
        "restore_path": render(package.restore_path, variables) if package.restore_path else None,
        "include": render_list(package.include),
        "exclude": render_list(package.exclude),
    })


def resolve_packages(
    packages: t.Sequence[PackageConfig],
    variables: t.Mapping[str, t.Any],
    temp_path: t.Optional[t.Callable[[str], Path]] = None,
) -> t.List[PackageConfig]:
    """Render every package; ``temp_path`` supplies the ``{temp}`` variable."""
    resolved = []
    for package in packages:
        package_vars = dict(variables)
        if temp_path is not None:
            package_vars["temp"] = str(temp_path(package.name))
        resolved.append(resolve_package(package, package_vars))
        logger.debug(f"Resolved package {package.name}: path={resolved[-1].path}")
    return resolved


def find_package_repository_config(
    package: PackageConfig,
    repository: RepositoryConfig,
) -> t.Dict[str, t.Any]:
    """Return the first package config entry targeting ``repository``."""
    for entry in package.repository_configs:
        if entry.type != repository.type:
            continue
        if entry.names and repository.name not in entry.names:
            continue
        return entry.config
    return {}
