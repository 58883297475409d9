"""Persistence for routing rules."""

from __future__ import annotations

import threading
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ..core.clock import as_utc
from ..models import RoutingRuleRecord
from ..models.session import session_scope
from .rules import PredicateKind, RoutingRule, thaw_args


class RoutingRuleRepository(Protocol):
    def list_all(self) -> list[RoutingRule]: ...

    def add(self, rule: RoutingRule) -> None: ...

    def delete(self, rule_id: str) -> bool: ...


class InMemoryRoutingRuleRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rules: dict[str, RoutingRule] = {}

    def list_all(self) -> list[RoutingRule]:
        with self._lock:
            return sorted(self._rules.values(), key=lambda rule: rule.sort_key)

    def add(self, rule: RoutingRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule

    def delete(self, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None


class SqlAlchemyRoutingRuleRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def list_all(self) -> list[RoutingRule]:
        stmt = select(RoutingRuleRecord).order_by(
            RoutingRuleRecord.priority, RoutingRuleRecord.created_seq
        )
        with session_scope(self._session_factory) as session:
            return [
                RoutingRule(
                    id=record.id,
                    name=record.name,
                    priority=record.priority,
                    created_seq=record.created_seq,
                    predicate_kind=PredicateKind(record.predicate_kind),
                    predicate_args=dict(record.predicate_args or {}),
                    target_queue=record.target_queue,
                    created_at=as_utc(record.created_at),
                )
                for record in session.scalars(stmt)
            ]

    def add(self, rule: RoutingRule) -> None:
        with session_scope(self._session_factory) as session:
            session.add(
                RoutingRuleRecord(
                    id=rule.id,
                    name=rule.name,
                    priority=rule.priority,
                    created_seq=rule.created_seq,
                    predicate_kind=rule.predicate_kind.value,
                    predicate_args=thaw_args(rule.predicate_args),
                    target_queue=rule.target_queue,
                    created_at=rule.created_at,
                )
            )

    def delete(self, rule_id: str) -> bool:
        with session_scope(self._session_factory) as session:
            record = session.get(RoutingRuleRecord, rule_id)
            if record is None:
                return False
            session.delete(record)
            return True
