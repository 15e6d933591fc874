"""Tests for retention evaluation."""

from dataclasses import dataclass

import pytest

from stowage.errors import ConfigurationError
from stowage.retention import (
    MODE_FILTER,
    MODE_IDS,
    MODE_POLICY,
    NO_FILTER,
    NO_POLICY,
    RetentionPolicy,
    bucket_key,
    evaluate,
    select_prune_mode,
)
from stowage.util.timeutil import parse_iso


@dataclass
class Item:
    name: str
    date: str
    package_name: str = "web"
    repository_name: str = "r1"


class TestRetentionPolicy:
    """Test policy activity rules."""

    def test_empty_policy_is_inactive(self):
        """Test that a policy without counts does not filter."""
        policy = RetentionPolicy()
        assert not policy.is_active
        assert not policy.has_values()

    def test_zero_keep_last_is_active(self):
        """Test that keep_last counts even when zero."""
        assert RetentionPolicy(keep_last=0).is_active

    def test_zero_daily_is_inactive(self):
        """Test that other granularities need a positive count."""
        policy = RetentionPolicy(keep_daily=0)
        assert not policy.is_active
        assert policy.has_values()

    def test_negative_count_rejected(self):
        """Test count validation."""
        with pytest.raises(ValueError):
            RetentionPolicy(keep_daily=-1)


class TestEvaluate:
    """Test retention evaluation over item groups."""

    def test_keep_last_keeps_newest(self):
        """Test keep_last=1 over three dates keeps only the newest."""
        d1 = Item("d1", "2024-01-01T10:00:00.000Z")
        d2 = Item("d2", "2024-01-02T10:00:00.000Z")
        d3 = Item("d3", "2024-01-03T10:00:00.000Z")

        result = evaluate([d1, d2, d3], ["package_name"], RetentionPolicy(keep_last=1))

        assert result.keep == [d3]
        assert result.drop == [d1, d2]
        assert result.reasons_for(d3) == ["last"]

    def test_daily_keeps_newest_of_same_day(self):
        """Test two items on the same day count as one daily bucket."""
        morning = Item("morning", "2024-03-05T08:00:00.000Z")
        evening = Item("evening", "2024-03-05T20:00:00.000Z")
        previous = Item("previous", "2024-03-04T20:00:00.000Z")

        result = evaluate([morning, evening, previous], [], RetentionPolicy(keep_daily=2))

        assert result.keep == [evening, previous]
        assert result.drop == [morning]

    def test_multiple_reasons(self):
        """Test an item kept by several granularities lists each of them."""
        newest = Item("newest", "2024-03-05T20:00:00.000Z")
        older = Item("older", "2024-02-01T20:00:00.000Z")

        result = evaluate([older, newest], [], RetentionPolicy(keep_last=1, keep_monthly=2))

        assert result.reasons_for(newest) == ["last", "monthly"]
        assert result.reasons_for(older) == ["monthly"]

    def test_preserves_input_order_and_identity(self):
        """Test kept items keep their input order and object identity."""
        items = [
            Item("b", "2024-01-02T00:00:00.000Z"),
            Item("a", "2024-01-03T00:00:00.000Z"),
            Item("c", "2024-01-01T00:00:00.000Z"),
        ]

        result = evaluate(items, [], RetentionPolicy(keep_last=2))

        assert [item.name for item in result.keep] == ["b", "a"]
        assert result.keep[0] is items[0]

    def test_groups_are_independent(self):
        """Test each group gets its own counts."""
        web = Item("web", "2024-01-01T00:00:00.000Z", package_name="web")
        db_old = Item("db-old", "2024-01-01T00:00:00.000Z", package_name="db")
        db_new = Item("db-new", "2024-01-02T00:00:00.000Z", package_name="db")

        result = evaluate([web, db_old, db_new], ["package_name"], RetentionPolicy(keep_last=1))

        assert result.keep == [web, db_new]

    def test_inactive_policy_keeps_all(self):
        """Test an inactive policy keeps everything with the no-filter reason."""
        items = [Item("a", "2024-01-01T00:00:00.000Z"), Item("b", "2024-01-02T00:00:00.000Z")]

        result = evaluate(items, ["package_name"], RetentionPolicy())

        assert result.keep == items
        assert all(result.reasons_for(item) == [NO_FILTER] for item in items)

    def test_resolver_without_policy(self):
        """Test groups without a resolved policy are kept as no-policy."""
        web = Item("web", "2024-01-01T00:00:00.000Z", package_name="web")
        db = Item("db", "2024-01-01T00:00:00.000Z", package_name="db")

        def resolve(group):
            return RetentionPolicy(keep_last=0) if group[0].package_name == "web" else None

        result = evaluate([web, db], ["package_name"], resolve)

        assert result.keep == [db]
        assert result.reasons_for(db) == [NO_POLICY]

    def test_resolver_with_inactive_policy(self):
        """Test an inactive resolved policy keeps its group as no-filter."""
        web = Item("web", "2024-01-01T00:00:00.000Z", package_name="web")

        result = evaluate([web], ["package_name"], lambda group: RetentionPolicy())

        assert result.keep == [web]
        assert result.reasons_for(web) == [NO_FILTER]


class TestBucketKey:
    """Test calendar bucket keys."""

    def test_weekly_uses_iso_week(self):
        """Test that dates of one ISO week share a weekly bucket."""
        monday = parse_iso("2024-01-01T00:00:00.000Z")
        sunday = parse_iso("2024-01-07T23:00:00.000Z")
        next_monday = parse_iso("2024-01-08T00:00:00.000Z")

        assert bucket_key("weekly", 0, monday) == bucket_key("weekly", 1, sunday)
        assert bucket_key("weekly", 0, monday) != bucket_key("weekly", 2, next_monday)

    def test_last_uses_position(self):
        """Test the last granularity never merges items."""
        date = parse_iso("2024-01-01T00:00:00.000Z")
        assert bucket_key("last", 0, date) != bucket_key("last", 1, date)


class TestSelectPruneMode:
    """Test prune mode selection."""

    def test_ids_with_keep_is_rejected(self):
        """Test ids combined with keep filters raise a configuration error."""
        with pytest.raises(ConfigurationError):
            select_prune_mode(["abcdef12"], RetentionPolicy(keep_last=1), ["package_name"])

    def test_policy_mode_requires_package_grouping(self):
        """Test policy mode needs package_name in group_by."""
        with pytest.raises(ConfigurationError):
            select_prune_mode(None, None, ["repository_name"])

    def test_modes(self):
        """Test each mode is selected from its inputs."""
        assert select_prune_mode(["abcdef12"], None, []) == MODE_IDS
        assert select_prune_mode(None, RetentionPolicy(keep_daily=0), []) == MODE_FILTER
        assert select_prune_mode(None, None, ["package_name"]) == MODE_POLICY
