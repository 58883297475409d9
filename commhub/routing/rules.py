"""Routing rules and their predicates."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from ..contacts.models import Contact

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


class PredicateKind(str, Enum):
    KEYWORD = "keyword"
    CUSTOMER_TYPE = "customer-type"
    TIME_WINDOW = "time-window"
    SKILL = "skill"


@dataclass(frozen=True)
class RoutingContext:
    """What a rule may look at when deciding."""

    text_signal: str | None
    topic_skills: tuple[str, ...]
    contact: Contact | None
    local_time: datetime


@dataclass(frozen=True)
class RoutingRule:
    id: str
    priority: int
    predicate_kind: PredicateKind
    predicate_args: Mapping[str, Any]
    target_queue: str
    created_seq: int = 0
    name: str | None = None
    created_at: datetime | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "predicate_args", freeze_args(self.predicate_args))

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.created_seq)

    def matches(self, context: RoutingContext) -> bool:
        return _PREDICATES[self.predicate_kind](self.predicate_args, context)


@dataclass(frozen=True)
class RoutingDecision:
    queue: str
    rule_id: str | None = None
    required_skills: tuple[str, ...] = field(default_factory=tuple)
    priority: int = 0


def freeze_args(args: Mapping[str, Any]) -> Mapping[str, Any]:
    """Read-only copy of predicate arguments with list values turned into tuples."""

    frozen = {
        key: tuple(value) if isinstance(value, (list, tuple)) else value
        for key, value in args.items()
    }
    return MappingProxyType(frozen)


def thaw_args(args: Mapping[str, Any]) -> dict[str, Any]:
    """Plain JSON-ready copy of predicate arguments."""

    return {key: list(value) if isinstance(value, tuple) else value for key, value in args.items()}


def parse_clock(value: str) -> time:
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Expected HH:MM, got {value!r}") from exc


def _string_list(args: dict[str, Any], plural: str, singular: str) -> list[str]:
    values = args.get(plural)
    if values is None and args.get(singular) is not None:
        values = [args[singular]]
    if isinstance(values, str):
        values = [values]
    return [str(value) for value in values or [] if str(value).strip()]


def validate_args(kind: PredicateKind, args: dict[str, Any]) -> dict[str, Any]:
    """Return normalized predicate arguments or raise :class:`ValueError`."""

    if kind is PredicateKind.KEYWORD:
        keywords = _string_list(args, "keywords", "keyword")
        if not keywords:
            raise ValueError("keyword rules need at least one keyword")
        return {"keywords": keywords}
    if kind is PredicateKind.CUSTOMER_TYPE:
        tiers = [tier.lower() for tier in _string_list(args, "tiers", "tier")]
        if not tiers:
            raise ValueError("customer-type rules need a tier")
        return {"tiers": tiers}
    if kind is PredicateKind.TIME_WINDOW:
        start = parse_clock(str(args.get("start", "")))
        end = parse_clock(str(args.get("end", "")))
        normalized: dict[str, Any] = {
            "start": start.strftime("%H:%M"),
            "end": end.strftime("%H:%M"),
        }
        days = [day.lower()[:3] for day in _string_list(args, "days", "day")]
        unknown = [day for day in days if day not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unknown weekdays: {', '.join(unknown)}")
        if days:
            normalized["days"] = days
        return normalized
    if kind is PredicateKind.SKILL:
        skills = _string_list(args, "skills", "skill")
        if not skills:
            raise ValueError("skill rules need at least one skill")
        return {"skills": skills}
    raise ValueError(f"Unsupported predicate kind {kind!r}")


# ----------------------------------------------------------------------
# Predicates


def _keyword(args: Mapping[str, Any], context: RoutingContext) -> bool:
    if not context.text_signal:
        return False
    haystack = context.text_signal.lower()
    return any(keyword.lower() in haystack for keyword in args.get("keywords", []))


def _customer_type(args: Mapping[str, Any], context: RoutingContext) -> bool:
    if context.contact is None:
        return False
    return context.contact.priority_tier.value in args.get("tiers", [])


def _time_window(args: Mapping[str, Any], context: RoutingContext) -> bool:
    start = parse_clock(args["start"])
    end = parse_clock(args["end"])
    days = args.get("days")
    if days and WEEKDAYS[context.local_time.weekday()] not in days:
        return False
    now = context.local_time.time().replace(second=0, microsecond=0)
    if start < end:
        return start <= now < end
    if start > end:
        return now >= start or now < end
    return False


def _skill(args: Mapping[str, Any], context: RoutingContext) -> bool:
    wanted = set(args.get("skills", []))
    return bool(wanted) and wanted.issubset(context.topic_skills)


_PREDICATES = {
    PredicateKind.KEYWORD: _keyword,
    PredicateKind.CUSTOMER_TYPE: _customer_type,
    PredicateKind.TIME_WINDOW: _time_window,
    PredicateKind.SKILL: _skill,
}
