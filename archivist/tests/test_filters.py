"""Tests for search filter parsing."""

from datetime import datetime, timezone

import pytest

from archivist.common.errors import InvalidFilter
from archivist.common.filters import SearchFilters, filters_to_dict, parse_filters


class TestParseFilters:
    def test_none_is_empty(self):
        assert parse_filters(None).is_empty

    def test_strings_and_lists_merged(self):
        filters = parse_filters({"session_id": "s1", "session_ids": ["s2"], "track": "treasury", "tags": ["grants"]})
        assert filters.session_ids == ["s1", "s2"]
        assert filters.tracks == ["treasury"]
        assert filters.tags == ["grants"]

    def test_unknown_key(self):
        with pytest.raises(InvalidFilter, match="Unknown filter key"):
            parse_filters({"author": "alice"})

    def test_wrong_type(self):
        with pytest.raises(InvalidFilter):
            parse_filters({"tags": [1, 2]})

    def test_unparseable_date(self):
        with pytest.raises(InvalidFilter, match="ISO-8601"):
            parse_filters({"date_from": "last tuesday"})

    def test_inverted_dates(self):
        with pytest.raises(InvalidFilter, match="after"):
            parse_filters({"date_from": "2024-05-01", "date_to": "2024-01-01"})

    def test_time_scope_sets_cutoff(self):
        now = datetime(2024, 6, 1, tzinfo=timezone.utc)
        filters = parse_filters({"time_scope": "last_week"}, now=now)
        assert filters.date_from == datetime(2024, 5, 25, tzinfo=timezone.utc)

    def test_unknown_time_scope(self):
        with pytest.raises(InvalidFilter, match="time_scope"):
            parse_filters({"time_scope": "last_decade"})

    def test_not_a_mapping(self):
        with pytest.raises(InvalidFilter):
            parse_filters(["track"])

    def test_to_dict(self):
        filters = parse_filters({"track": "voting", "date_to": "2024-01-01T00:00:00Z"})
        assert filters_to_dict(filters) == {"tracks": ["voting"], "date_to": "2024-01-01T00:00:00+00:00"}


class TestMatches:
    def test_tags_intersect(self):
        filters = SearchFilters(tags=["grants", "audit"])
        assert filters.matches({"tags": ["audit"]})
        assert not filters.matches({"tags": ["voting"]})

    def test_date_range(self):
        filters = parse_filters({"date_from": "2024-01-01", "date_to": "2024-12-31"})
        assert filters.matches({"created_at": "2024-06-01T12:00:00+00:00"})
        assert not filters.matches({"created_at": "2023-06-01T12:00:00+00:00"})
        assert not filters.matches({})
