"""
BGG Cache - Query Translator

Turns a caller's filter map and a (field, direction) sort pair into SQL
predicates and ORDER BY clauses over the ``things`` table.

Each supported filter key maps to one small filter class exposing
``clause()`` (a boolean SQL expression) and ``apply(stmt)``. The active
filters are folded into a single AND predicate, so every filter keeps its
own semantics and is testable on its own.

Supported filter keys (all optional, None/blank means "not active"):
    name         case-insensitive substring of primary_name
    players      target within [min_players, max_players]
    play_time    target within [min_play_time, max_play_time]
    min_rating   average >= value
    max_rank     0 < rank <= value
    weight_min   average_weight >= value  (max defaults to WEIGHT_FILTER_MAX)
    weight_max   average_weight <= value  (min defaults to WEIGHT_FILTER_MIN)
    description  case-insensitive substring of description
    tag_ids      linked to every tag id
    tag_names    linked to a tag of every name (case-insensitive)

Numeric comparisons go through ``safe_int``/``safe_float``: a row whose
stored value is not numeric never satisfies a numeric filter and sorts last.
"""

from __future__ import annotations

import uuid
from typing import Any, Iterable, Mapping, Protocol

import structlog
from sqlalchemy import ColumnElement, Select, and_, distinct, false, func, select, true

from bggcache.cache.casts import safe_float, safe_int
from bggcache.config import SortDirection, SortField, settings
from bggcache.errors import QueryError
from bggcache.models.tag import Tag
from bggcache.models.thing import Thing
from bggcache.models.thing_tag import ThingTag

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Filter protocol
# ---------------------------------------------------------------------------


class ThingFilter(Protocol):
    """A single active filter over the things table."""

    def clause(self) -> ColumnElement[bool]:
        ...

    def apply(self, stmt: Select) -> Select:
        ...


class _ClauseFilter:
    """Base for filters whose whole effect is one WHERE clause."""

    def clause(self) -> ColumnElement[bool]:
        raise NotImplementedError

    def apply(self, stmt: Select) -> Select:
        return stmt.where(self.clause())

    def __eq__(self, other: object) -> bool:
        return type(self) is type(other) and vars(self) == vars(other)

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"{type(self).__name__}({fields})"


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class NameContains(_ClauseFilter):
    def __init__(self, term: str):
        self.term = term

    def clause(self) -> ColumnElement[bool]:
        return Thing.primary_name.icontains(self.term, autoescape=True)


class DescriptionContains(_ClauseFilter):
    def __init__(self, term: str):
        self.term = term

    def clause(self) -> ColumnElement[bool]:
        return Thing.description.icontains(self.term, autoescape=True)


class PlayerCount(_ClauseFilter):
    """Target player count falls inside the inclusive [min, max] range."""

    def __init__(self, target: int):
        self.target = target

    def clause(self) -> ColumnElement[bool]:
        return and_(
            safe_int(Thing.min_players) <= self.target,
            safe_int(Thing.max_players) >= self.target,
        )


class PlayTime(_ClauseFilter):
    """Target play time (minutes) falls inside [min_play_time, max_play_time]."""

    def __init__(self, target: int):
        self.target = target

    def clause(self) -> ColumnElement[bool]:
        return and_(
            safe_int(Thing.min_play_time) <= self.target,
            safe_int(Thing.max_play_time) >= self.target,
        )


class MinRating(_ClauseFilter):
    def __init__(self, threshold: float):
        self.threshold = threshold

    def clause(self) -> ColumnElement[bool]:
        return safe_float(Thing.average) >= self.threshold


class MaxRank(_ClauseFilter):
    """Ranked at or better than the threshold; unranked rows are excluded."""

    def __init__(self, threshold: int):
        self.threshold = threshold

    def clause(self) -> ColumnElement[bool]:
        rank = safe_int(Thing.rank)
        return and_(rank > 0, rank <= self.threshold)


class WeightRange(_ClauseFilter):
    """Inclusive complexity weight range."""

    def __init__(self, minimum: float, maximum: float):
        self.minimum = minimum
        self.maximum = maximum

    def clause(self) -> ColumnElement[bool]:
        weight = safe_float(Thing.average_weight)
        return and_(weight >= self.minimum, weight <= self.maximum)


class HasAllTagIds(_ClauseFilter):
    """Thing is linked to every one of the given tag ids (set intersection)."""

    def __init__(self, tag_ids: Iterable[uuid.UUID]):
        self.tag_ids = sorted(set(tag_ids), key=str)

    def clause(self) -> ColumnElement[bool]:
        matching = (
            select(ThingTag.thing_id)
            .where(ThingTag.tag_id.in_(self.tag_ids))
            .group_by(ThingTag.thing_id)
            .having(func.count(distinct(ThingTag.tag_id)) == len(self.tag_ids))
        )
        return Thing.id.in_(matching)


class HasAllTagNames(_ClauseFilter):
    """Thing is linked to a tag of every given name, compared case-insensitively."""

    def __init__(self, names: Iterable[str]):
        self.names = sorted({name.strip().lower() for name in names if name.strip()})

    def clause(self) -> ColumnElement[bool]:
        tag_name = func.lower(Tag.name)
        matching = (
            select(ThingTag.thing_id)
            .join(Tag, Tag.id == ThingTag.tag_id)
            .where(tag_name.in_(self.names))
            .group_by(ThingTag.thing_id)
            .having(func.count(distinct(tag_name)) == len(self.names))
        )
        return Thing.id.in_(matching)


class MatchNothing(_ClauseFilter):
    """Stands in for a tag-set filter that references an impossible tag id."""

    def clause(self) -> ColumnElement[bool]:
        return false()


# ---------------------------------------------------------------------------
# Filter input parsing
# ---------------------------------------------------------------------------

FILTER_KEYS = frozenset(
    {
        "name",
        "players",
        "play_time",
        "min_rating",
        "max_rank",
        "weight_min",
        "weight_max",
        "description",
        "tag_ids",
        "tag_names",
    }
)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset)):
        return not any(not _is_blank(item) for item in value)
    return False


def _parse_int(key: str, value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        logger.warning("query_filter_value_ignored", filter=key, value=value)
        return None


def _parse_float(key: str, value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        logger.warning("query_filter_value_ignored", filter=key, value=value)
        return None


def _as_list(value: Any, *, split: bool = False) -> list[Any]:
    if isinstance(value, str):
        return value.split(",") if split else [value]
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _weight_filter(filters: Mapping[str, Any]) -> WeightRange | None:
    """Build the weight range, completing a one-sided input with defaults."""
    raw_min = filters.get("weight_min")
    raw_max = filters.get("weight_max")
    minimum = None if _is_blank(raw_min) else _parse_float("weight_min", raw_min)
    maximum = None if _is_blank(raw_max) else _parse_float("weight_max", raw_max)
    if minimum is None and maximum is None:
        return None
    return WeightRange(
        minimum if minimum is not None else settings.WEIGHT_FILTER_MIN,
        maximum if maximum is not None else settings.WEIGHT_FILTER_MAX,
    )


def _tag_ids_filter(value: Any) -> _ClauseFilter | None:
    tag_ids: list[uuid.UUID] = []
    for item in _as_list(value, split=True):
        if isinstance(item, uuid.UUID):
            tag_ids.append(item)
            continue
        text = str(item).strip()
        if not text:
            continue
        try:
            tag_ids.append(uuid.UUID(text))
        except ValueError:
            # No stored tag can carry this id, so the AND can never hold.
            logger.warning("query_filter_unknown_tag_id", tag_id=text)
            return MatchNothing()
    return HasAllTagIds(tag_ids) if tag_ids else None


def build_filters(filters: Mapping[str, Any] | None) -> list[ThingFilter]:
    """
    Translate a filter map into the list of active filter objects.

    Blank values are inactive. Values that do not parse as the expected
    number are logged and treated as inactive. Unknown keys are logged and
    ignored.
    """
    if not filters:
        return []

    unknown = sorted(set(filters) - FILTER_KEYS)
    if unknown:
        logger.warning("query_filter_keys_ignored", keys=unknown)

    active = {k: v for k, v in filters.items() if k in FILTER_KEYS and not _is_blank(v)}
    result: list[ThingFilter] = []

    if "name" in active:
        result.append(NameContains(str(active["name"]).strip()))

    if "players" in active:
        target = _parse_int("players", active["players"])
        if target is not None:
            result.append(PlayerCount(target))

    if "play_time" in active:
        target = _parse_int("play_time", active["play_time"])
        if target is not None:
            result.append(PlayTime(target))

    if "min_rating" in active:
        threshold = _parse_float("min_rating", active["min_rating"])
        if threshold is not None:
            result.append(MinRating(threshold))

    if "max_rank" in active:
        threshold = _parse_int("max_rank", active["max_rank"])
        if threshold is not None:
            result.append(MaxRank(threshold))

    weight = _weight_filter(active)
    if weight is not None:
        result.append(weight)

    if "description" in active:
        result.append(DescriptionContains(str(active["description"]).strip()))

    if "tag_ids" in active:
        tag_filter = _tag_ids_filter(active["tag_ids"])
        if tag_filter is not None:
            result.append(tag_filter)

    if "tag_names" in active:
        names = [str(name) for name in _as_list(active["tag_names"]) if not _is_blank(name)]
        if names:
            result.append(HasAllTagNames(names))

    return result


def build_predicate(filters: Mapping[str, Any] | None) -> ColumnElement[bool]:
    """AND of every active filter's clause (TRUE when nothing is active)."""
    clauses = [f.clause() for f in build_filters(filters)]
    if not clauses:
        return true()
    return and_(*clauses)


def apply_filters(stmt: Select, filters: Iterable[ThingFilter]) -> Select:
    """Fold the filters over a SELECT."""
    for thing_filter in filters:
        stmt = thing_filter.apply(stmt)
    return stmt


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

_SORT_ALIASES = {
    "primary_name": SortField.NAME,
    "min_players": SortField.PLAYERS,
    "average": SortField.RATING,
    "average_weight": SortField.WEIGHT,
}


def _sort_field(field: SortField | str) -> SortField:
    if isinstance(field, SortField):
        return field
    key = str(field).strip().lower()
    if key in _SORT_ALIASES:
        return _SORT_ALIASES[key]
    try:
        return SortField(key)
    except ValueError:
        raise QueryError(f"Unsupported sort field: {field!r}") from None


def _sort_direction(direction: SortDirection | str) -> SortDirection:
    if isinstance(direction, SortDirection):
        return direction
    try:
        return SortDirection(str(direction).strip().lower())
    except ValueError:
        raise QueryError(f"Unsupported sort direction: {direction!r}") from None


def build_ordering(
    field: SortField | str = SortField.NAME,
    direction: SortDirection | str = SortDirection.ASC,
) -> list[ColumnElement[Any]]:
    """
    ORDER BY clauses for a sort request.

    Values that are NULL or non-numeric sort last in both directions. Name
    sorting ignores case. Thing id is the final tiebreak so the order is
    deterministic.

    Raises:
        QueryError: Unknown field or direction.
    """
    field = _sort_field(field)
    direction = _sort_direction(direction)

    if field is SortField.NAME:
        key = func.lower(Thing.primary_name)
    elif field is SortField.PLAYERS:
        key = safe_int(Thing.min_players)
    elif field is SortField.RATING:
        key = safe_float(Thing.average)
    else:
        key = safe_float(Thing.average_weight)

    ordered = key.desc() if direction is SortDirection.DESC else key.asc()
    return [ordered.nulls_last(), Thing.id.asc()]
