"""
Search Filters

Parses caller-supplied metadata filters (session, track, tags, date range)
into a validated SearchFilters value. Malformed filters raise InvalidFilter
immediately; they are never retried.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .errors import InvalidFilter


class TimeScope(str, Enum):
    """Relative time scopes accepted in place of explicit dates"""
    LAST_WEEK = "last_week"
    LAST_MONTH = "last_month"
    LAST_QUARTER = "last_quarter"
    LAST_YEAR = "last_year"
    ALL_TIME = "all_time"


_SCOPE_DAYS = {
    TimeScope.LAST_WEEK: 7,
    TimeScope.LAST_MONTH: 30,
    TimeScope.LAST_QUARTER: 90,
    TimeScope.LAST_YEAR: 365,
}

ALLOWED_KEYS = {"session_id", "session_ids", "track", "tracks", "tags", "date_from", "date_to", "time_scope", "document_id"}


@dataclass
class SearchFilters:
    """Validated metadata filters applied by the vector index"""
    session_ids: List[str] = field(default_factory=list)
    tracks: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    document_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    @property
    def is_empty(self) -> bool:
        return not (self.session_ids or self.tracks or self.tags or self.document_id
                    or self.date_from or self.date_to)

    def matches(self, metadata: Mapping[str, Any]) -> bool:
        """True if a chunk's index metadata satisfies every filter."""
        if self.session_ids and metadata.get("session_id") not in self.session_ids:
            return False
        if self.tracks and metadata.get("track") not in self.tracks:
            return False
        if self.document_id and metadata.get("document_id") != self.document_id:
            return False
        if self.tags:
            chunk_tags = set(metadata.get("tags") or [])
            if not chunk_tags.intersection(self.tags):
                return False
        if self.date_from or self.date_to:
            created = _parse_datetime(metadata.get("created_at"))
            if created is None:
                return False
            if self.date_from and created < self.date_from:
                return False
            if self.date_to and created > self.date_to:
                return False
        return True

    def with_sessions(self, session_ids: List[str]) -> "SearchFilters":
        return SearchFilters(
            session_ids=list(session_ids),
            tracks=list(self.tracks),
            tags=list(self.tags),
            document_id=self.document_id,
            date_from=self.date_from,
            date_to=self.date_to,
        )


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _string_list(key: str, value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple, set)) and all(isinstance(v, str) for v in value):
        return [v for v in value if v.strip()]
    raise InvalidFilter(f"Filter '{key}' must be a string or list of strings", key=key)


def parse_filters(raw: Optional[Mapping[str, Any]], now: Optional[datetime] = None) -> SearchFilters:
    """
    Build SearchFilters from a plain mapping.

    Raises:
        InvalidFilter: unknown keys, wrong types, unparseable or inverted dates
    """
    if raw is None:
        return SearchFilters()
    if isinstance(raw, SearchFilters):
        return raw
    if not isinstance(raw, Mapping):
        raise InvalidFilter("Filters must be an object")

    unknown = set(raw) - ALLOWED_KEYS
    if unknown:
        raise InvalidFilter(f"Unknown filter key(s): {', '.join(sorted(unknown))}", keys=sorted(unknown))

    filters = SearchFilters(
        session_ids=_string_list("session_id", raw.get("session_id")) + _string_list("session_ids", raw.get("session_ids")),
        tracks=_string_list("track", raw.get("track")) + _string_list("tracks", raw.get("tracks")),
        tags=_string_list("tags", raw.get("tags")),
    )

    if raw.get("document_id") is not None:
        if not isinstance(raw["document_id"], str):
            raise InvalidFilter("Filter 'document_id' must be a string", key="document_id")
        filters.document_id = raw["document_id"]

    for key in ("date_from", "date_to"):
        if raw.get(key) in (None, ""):
            continue
        parsed = _parse_datetime(raw[key])
        if parsed is None:
            raise InvalidFilter(f"Filter '{key}' is not an ISO-8601 date: {raw[key]!r}", key=key)
        setattr(filters, key, parsed)

    if raw.get("time_scope"):
        try:
            scope = TimeScope(raw["time_scope"])
        except ValueError:
            raise InvalidFilter(f"Unknown time_scope: {raw['time_scope']!r}", key="time_scope") from None
        if scope in _SCOPE_DAYS:
            cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=_SCOPE_DAYS[scope])
            if filters.date_from is None or filters.date_from < cutoff:
                filters.date_from = cutoff

    if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
        raise InvalidFilter("date_from is after date_to")

    return filters


def filters_to_dict(filters: SearchFilters) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if filters.session_ids:
        data["session_ids"] = list(filters.session_ids)
    if filters.tracks:
        data["tracks"] = list(filters.tracks)
    if filters.tags:
        data["tags"] = list(filters.tags)
    if filters.document_id:
        data["document_id"] = filters.document_id
    if filters.date_from:
        data["date_from"] = filters.date_from.isoformat()
    if filters.date_to:
        data["date_to"] = filters.date_to.isoformat()
    return data
