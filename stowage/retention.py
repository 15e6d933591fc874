"""Retention evaluation over snapshot sets.

Pure functions deciding which snapshots survive a retention policy. Items are
grouped by the concatenation of ``group_by`` attributes, then each active
granularity walks the group newest first and keeps an item whenever its
calendar bucket differs from the last kept bucket and the granularity still
has a remaining count.
"""

import typing as t
from datetime import datetime

from pydantic import BaseModel, Field

from .errors import ConfigurationError
from .util.timeutil import parse_iso

T = t.TypeVar("T")

GRANULARITIES = ("last", "minutely", "hourly", "daily", "weekly", "monthly", "yearly")

NO_FILTER = "no-filter"
NO_POLICY = "no-policy"

MODE_IDS = "ids"
MODE_FILTER = "filter"
MODE_POLICY = "policy"

PolicyResolver = t.Callable[[t.List[T]], t.Optional["RetentionPolicy"]]


class RetentionPolicy(BaseModel):
    """Number of snapshots to keep per granularity."""

    keep_last: t.Optional[int] = Field(default=None, ge=0, description="Newest snapshots to keep")
    keep_minutely: t.Optional[int] = Field(default=None, ge=0, description="Minutes to keep")
    keep_hourly: t.Optional[int] = Field(default=None, ge=0, description="Hours to keep")
    keep_daily: t.Optional[int] = Field(default=None, ge=0, description="Days to keep")
    keep_weekly: t.Optional[int] = Field(default=None, ge=0, description="ISO weeks to keep")
    keep_monthly: t.Optional[int] = Field(default=None, ge=0, description="Months to keep")
    keep_yearly: t.Optional[int] = Field(default=None, ge=0, description="Years to keep")

    def counts(self) -> t.Dict[str, t.Optional[int]]:
        return {name: getattr(self, f"keep_{name}") for name in GRANULARITIES}

    def has_values(self) -> bool:
        """True when any count is set, zero included."""
        return any(value is not None for value in self.counts().values())

    @property
    def is_active(self) -> bool:
        """A policy filters when ``keep_last`` is set or another count is positive."""
        return self.keep_last is not None or any(
            value for name, value in self.counts().items() if name != "last"
        )


class RetentionResult(t.Generic[T]):
    """Kept items in input order plus the reasons each one was kept."""

    def __init__(self, items: t.Sequence[T], kept_ids: t.Set[int], reasons: t.Dict[int, t.List[str]]):
        self.items = list(items)
        self.keep: t.List[T] = [item for item in self.items if id(item) in kept_ids]
        self.reasons = reasons
        self._kept_ids = kept_ids

    @property
    def drop(self) -> t.List[T]:
        return [item for item in self.items if id(item) not in self._kept_ids]

    def is_kept(self, item: T) -> bool:
        return id(item) in self._kept_ids

    def reasons_for(self, item: T) -> t.List[str]:
        return self.reasons.get(id(item), [])


def bucket_key(granularity: str, index: int, date: datetime) -> str:
    """Calendar bucket of ``date`` (or the position for ``last``)."""
    if granularity == "last":
        return str(index)
    if granularity == "minutely":
        return date.strftime("%Y%m%d%H%M")
    if granularity == "hourly":
        return date.strftime("%Y%m%d%H")
    if granularity == "daily":
        return date.strftime("%Y%m%d")
    if granularity == "weekly":
        year, week, _ = date.isocalendar()
        return f"{year:04d}{week:02d}"
    if granularity == "monthly":
        return date.strftime("%Y%m")
    if granularity == "yearly":
        return date.strftime("%Y")
    raise ValueError(f"Unknown granularity: {granularity}")


def _item_date(item: t.Any) -> datetime:
    return parse_iso(item.date)


def _keep_all(items: t.Sequence[T], reason: str) -> t.Tuple[t.Set[int], t.Dict[int, t.List[str]]]:
    return {id(item) for item in items}, {id(item): [reason] for item in items}


def _filter_group(
    items: t.Sequence[T],
    policy: RetentionPolicy,
) -> t.Tuple[t.Set[int], t.Dict[int, t.List[str]]]:
    if not policy.is_active:
        return _keep_all(items, NO_FILTER)

    dated = [(item, _item_date(item)) for item in items]
    dated.sort(key=lambda pair: pair[1], reverse=True)

    kept: t.Set[int] = set()
    reasons: t.Dict[int, t.List[str]] = {}

    for granularity, count in policy.counts().items():
        if not count:
            continue
        remaining = count
        last_key: t.Optional[str] = None
        for index, (item, date) in enumerate(dated):
            if remaining <= 0:
                break
            key = bucket_key(granularity, index, date)
            if key == last_key:
                continue
            last_key = key
            remaining -= 1
            kept.add(id(item))
            reasons.setdefault(id(item), []).append(granularity)

    return kept, reasons


def group_items(
    items: t.Sequence[T],
    group_by: t.Optional[t.Sequence[str]] = None,
) -> t.Dict[str, t.List[T]]:
    """Partition items by the concatenation of ``group_by`` attribute values."""
    groups: t.Dict[str, t.List[T]] = {}
    for item in items:
        key = "".join(str(getattr(item, name) or "") for name in (group_by or ()))
        groups.setdefault(key, []).append(item)
    return groups


def evaluate(
    items: t.Sequence[T],
    group_by: t.Optional[t.Sequence[str]],
    policy: t.Union[RetentionPolicy, PolicyResolver],
) -> RetentionResult[T]:
    """Decide which items a retention policy keeps.

    Args:
        items: Objects exposing an ISO ``date`` attribute and the ``group_by`` attributes
        group_by: Attribute names whose values partition the items
        policy: A policy applied to every group, or a callback resolving one per
            group (returning None keeps the group with reason ``no-policy``)

    Returns:
        RetentionResult preserving input order and object identity
    """
    kept: t.Set[int] = set()
    reasons: t.Dict[int, t.List[str]] = {}

    for group in group_items(items, group_by).values():
        if isinstance(policy, RetentionPolicy):
            group_policy = policy
        else:
            group_policy = policy(group)
            if group_policy is None:
                group_kept, group_reasons = _keep_all(group, NO_POLICY)
                kept |= group_kept
                reasons.update(group_reasons)
                continue
        group_kept, group_reasons = _filter_group(group, group_policy)
        kept |= group_kept
        reasons.update(group_reasons)

    return RetentionResult(items, kept, reasons)


def select_prune_mode(
    ids: t.Optional[t.Sequence[str]],
    policy: t.Optional[RetentionPolicy],
    group_by: t.Sequence[str],
) -> str:
    """Pick how prune candidates are selected, validating the filters.

    Returns:
        ``"ids"``, ``"filter"`` or ``"policy"``

    Raises:
        ConfigurationError: On an id filter combined with keep filters, or a
            policy mode run whose grouping omits ``package_name``
    """
    has_keep = policy is not None and policy.has_values()
    if ids and has_keep:
        raise ConfigurationError("Snapshot ids can not be combined with keep filters")
    if ids:
        return MODE_IDS
    if has_keep:
        return MODE_FILTER
    if "package_name" not in group_by:
        raise ConfigurationError("Prune by configured policy requires grouping by package_name")
    return MODE_POLICY
