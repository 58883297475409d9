"""Pydantic schemas for routing rule management."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..contacts.models import PriorityTier
from .rules import PredicateKind, RoutingDecision, RoutingRule, thaw_args


class RoutingRuleCreate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    priority: int = Field(ge=0)
    predicate_kind: PredicateKind
    predicate_args: dict[str, Any] = Field(default_factory=dict)
    target_queue: str = Field(min_length=1, max_length=128)


class RoutingRuleOut(BaseModel):
    id: str
    name: str | None = None
    priority: int
    created_seq: int
    predicate_kind: PredicateKind
    predicate_args: dict[str, Any]
    target_queue: str
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, rule: RoutingRule) -> "RoutingRuleOut":
        return cls(
            id=rule.id,
            name=rule.name,
            priority=rule.priority,
            created_seq=rule.created_seq,
            predicate_kind=rule.predicate_kind,
            predicate_args=thaw_args(rule.predicate_args),
            target_queue=rule.target_queue,
            created_at=rule.created_at,
        )


class RoutingTestRequest(BaseModel):
    """Dry-run input: what a decision would see for an interaction."""

    text_signal: str | None = None
    topic: str | None = None
    priority_tier: PriorityTier | None = None


class RoutingDecisionOut(BaseModel):
    queue: str
    rule_id: str | None = None
    required_skills: list[str] = Field(default_factory=list)
    priority: int = 0

    @classmethod
    def from_domain(cls, decision: RoutingDecision) -> "RoutingDecisionOut":
        return cls(
            queue=decision.queue,
            rule_id=decision.rule_id,
            required_skills=list(decision.required_skills),
            priority=decision.priority,
        )
