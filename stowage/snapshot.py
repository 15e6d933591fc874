"""Snapshot data model and snapshot filtering."""

import typing as t
import uuid

from pydantic import BaseModel, Field, field_validator

from .errors import ConfigurationError
from .util.patterns import create_pattern_filter, create_task_filter
from .util.timeutil import is_valid_iso, now_iso

MIN_ID_PREFIX = 8


class PreSnapshot(BaseModel):
    """Identity minted once per backup run, before any backend write."""

    id: str = Field(description="UUID4 hex identifier")
    date: str = Field(description="ISO 8601 UTC timestamp")

    class Config:
        """Pydantic configuration."""

        frozen = True

    @field_validator("date")
    @classmethod
    def validate_date(cls, value: str) -> str:
        if not is_valid_iso(value):
            raise ValueError(f"Invalid snapshot date: {value}")
        return value

    @classmethod
    def create(cls, date: t.Optional[str] = None) -> "PreSnapshot":
        return cls(id=uuid.uuid4().hex, date=date or now_iso())

    @property
    def short_id(self) -> str:
        return self.id[:MIN_ID_PREFIX]


class Snapshot(PreSnapshot):
    """A stored package snapshot as reported by a repository."""

    original_id: str = Field(description="Backend native handle")
    package_name: str = Field(description="Package the snapshot belongs to")
    package_task_name: t.Optional[str] = Field(default=None, description="Task hook name")
    tags: t.List[str] = Field(default_factory=list, description="User tags")
    hostname: str = Field(default="", description="Host that created the snapshot")
    size: int = Field(default=0, description="Stored size in bytes")


class ExtendedSnapshot(Snapshot):
    """Snapshot annotated with the repository it was listed from."""

    repository_name: str
    repository_type: str

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Snapshot,
        repository_name: str,
        repository_type: str,
    ) -> "ExtendedSnapshot":
        return cls(
            **snapshot.model_dump(exclude={"repository_name", "repository_type"}),
            repository_name=repository_name,
            repository_type=repository_type,
        )


class SnapshotFilter(BaseModel):
    """Selection criteria shared by every repository's ``fetch_snapshots``.

    Ids match by full id or by a unique prefix of at least eight characters.
    Package and task names are glob patterns (``!`` negates); the task
    pattern ``<empty>`` selects snapshots without a task. Tags match when at
    least one tag overlaps.
    """

    ids: t.Optional[t.List[str]] = None
    package_names: t.Optional[t.List[str]] = None
    package_task_names: t.Optional[t.List[str]] = None
    tags: t.Optional[t.List[str]] = None

    @field_validator("ids")
    @classmethod
    def validate_ids(cls, value: t.Optional[t.List[str]]) -> t.Optional[t.List[str]]:
        for snapshot_id in value or []:
            if len(snapshot_id) < MIN_ID_PREFIX:
                raise ValueError(
                    f"Snapshot id '{snapshot_id}' is shorter than {MIN_ID_PREFIX} characters"
                )
        return value

    def match_package(self, package_name: str) -> bool:
        return create_pattern_filter(self.package_names)(package_name)

    def match_id(self, snapshot_id: str) -> bool:
        if not self.ids:
            return True
        return any(snapshot_id.startswith(prefix) for prefix in self.ids)

    def match(self, snapshot: Snapshot) -> bool:
        if not self.match_id(snapshot.id):
            return False
        if not self.match_package(snapshot.package_name):
            return False
        if not create_task_filter(self.package_task_names)(snapshot.package_task_name):
            return False
        if self.tags and not set(self.tags) & set(snapshot.tags):
            return False
        return True

    def apply(self, snapshots: t.Iterable[Snapshot]) -> t.List[Snapshot]:
        """Filter snapshots, rejecting id prefixes that match several ids.

        Raises:
            ConfigurationError: If an id prefix is ambiguous
        """
        selected = [s for s in snapshots if self.match(s)]
        for prefix in self.ids or []:
            matched_ids = {s.id for s in selected if s.id.startswith(prefix)}
            if len(matched_ids) > 1:
                raise ConfigurationError(f"Snapshot id prefix '{prefix}' is ambiguous")
        return selected
