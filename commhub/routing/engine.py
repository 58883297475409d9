"""Ordered rule evaluation that picks a destination queue."""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Any
from zoneinfo import ZoneInfo

from ..contacts.models import Contact, PriorityTier
from ..core.clock import Clock, utcnow
from ..core.errors import RuleNotFoundError
from ..interactions.models import Interaction
from .repository import RoutingRuleRepository
from .rules import (
    PredicateKind,
    RoutingContext,
    RoutingDecision,
    RoutingRule,
    validate_args,
)

logger = logging.getLogger(__name__)

VIP_TASK_PRIORITY = 10


class RoutingEngine:
    """First matching rule wins, in ascending priority then creation order.

    Rule changes build a new sorted tuple and swap it in; a routing decision
    reads the tuple once and evaluates that snapshot, so edits made while a
    decision is in flight never affect it.
    """

    def __init__(
        self,
        repository: RoutingRuleRepository,
        *,
        default_queue: str = "general",
        timezone: str = "America/New_York",
        topic_skills: dict[str, tuple[str, ...]] | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._default_queue = default_queue
        self._zone = ZoneInfo(timezone)
        self._topic_skills = dict(topic_skills or {})
        self._clock = clock
        self._write_lock = threading.Lock()
        self._rules: tuple[RoutingRule, ...] = tuple(
            sorted(repository.list_all(), key=lambda rule: rule.sort_key)
        )
        self._next_seq = max((rule.created_seq for rule in self._rules), default=0) + 1

    @property
    def default_queue(self) -> str:
        return self._default_queue

    def snapshot(self) -> tuple[RoutingRule, ...]:
        return self._rules

    def skills_for_topic(self, topic: str | None) -> tuple[str, ...]:
        if not topic:
            return ()
        return self._topic_skills.get(topic.lower(), ())

    # ------------------------------------------------------------------
    # Rule management

    def add_rule(
        self,
        *,
        priority: int,
        predicate_kind: PredicateKind,
        predicate_args: dict[str, Any],
        target_queue: str,
        name: str | None = None,
    ) -> RoutingRule:
        args = validate_args(predicate_kind, predicate_args)
        with self._write_lock:
            rule = RoutingRule(
                id=uuid.uuid4().hex,
                name=name,
                priority=priority,
                predicate_kind=predicate_kind,
                predicate_args=args,
                target_queue=target_queue,
                created_seq=self._next_seq,
                created_at=self._clock(),
            )
            self._repository.add(rule)
            self._next_seq += 1
            self._rules = tuple(sorted((*self._rules, rule), key=lambda r: r.sort_key))
        logger.info("Added routing rule %s -> %s", rule.id, rule.target_queue)
        return rule

    def remove_rule(self, rule_id: str) -> None:
        with self._write_lock:
            if not self._repository.delete(rule_id):
                raise RuleNotFoundError(f"Routing rule {rule_id} not found")
            self._rules = tuple(rule for rule in self._rules if rule.id != rule_id)
        logger.info("Removed routing rule %s", rule_id)

    # ------------------------------------------------------------------
    # Decisions

    def decide(
        self,
        *,
        text_signal: str | None,
        topic: str | None,
        contact: Contact | None,
    ) -> RoutingDecision:
        rules = self._rules
        required = self.skills_for_topic(topic)
        context = RoutingContext(
            text_signal=text_signal,
            topic_skills=required,
            contact=contact,
            local_time=self._clock().astimezone(self._zone),
        )
        priority = (
            VIP_TASK_PRIORITY
            if contact is not None and contact.priority_tier is PriorityTier.VIP
            else 0
        )
        for rule in rules:
            if rule.matches(context):
                return RoutingDecision(rule.target_queue, rule.id, required, priority)
        return RoutingDecision(self._default_queue, None, required, priority)

    def route(self, interaction: Interaction, contact: Contact | None = None) -> RoutingDecision:
        return self.decide(
            text_signal=interaction.text_signal,
            topic=interaction.topic,
            contact=contact,
        )
