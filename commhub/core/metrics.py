"""Prometheus collectors for the event processing core.

HTTP-level metrics come from ``prometheus-fastapi-instrumentator`` in
``main.py``; the collectors here count domain outcomes. They register on the
default registry so they are served from the same ``/api/metrics`` endpoint.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

WEBHOOK_EVENTS = Counter(
    "commhub_webhook_events_total",
    "Webhook events processed, by event kind and outcome.",
    ["kind", "outcome"],
)

TRANSITION_CONFLICTS = Counter(
    "commhub_transition_conflicts_total",
    "Events that matched no edge of the interaction state machine.",
    ["kind"],
)

TASK_BACKLOG = Gauge(
    "commhub_task_backlog",
    "Tasks waiting for a worker, by queue.",
    ["queue"],
)

ACTIVITY_LOG_FAILURES = Counter(
    "commhub_activity_log_failures_total",
    "Activity log entries abandoned after exhausting delivery attempts.",
)

CONTACT_LOOKUPS = Counter(
    "commhub_contact_lookups_total",
    "Contact resolution results (cached, found, not_found, degraded).",
    ["result"],
)
