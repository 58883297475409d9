"""Asynchronous activity logging to the customer-record system."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Protocol

from ..contacts.models import ResolutionStatus
from ..contacts.resolver import ContactResolver
from ..core.clock import Clock, utcnow
from ..core.errors import ActivityLogConflictError, ActivityLogNotFoundError
from ..core.metrics import ACTIVITY_LOG_FAILURES
from ..interactions.models import Call, Interaction, MessageThread, Voicemail
from ..interactions.service import InteractionService
from ..realtime.broadcaster import Broadcaster, interaction_room, role_room
from .models import ActivityKind, ActivityLogEntry, DeliveryState
from .repository import ActivityLogRepository

logger = logging.getLogger(__name__)

SMS_NOTE_LIMIT = 500


class CommunicationSink(Protocol):
    def log_communication(self, communication: dict[str, Any]) -> None: ...


class DeliveryError(RuntimeError):
    """A single delivery attempt failed and may be retried."""


@dataclass(frozen=True)
class DeliveryResult:
    entry: ActivityLogEntry

    @property
    def delivered(self) -> bool:
        return self.entry.delivery_state is DeliveryState.DELIVERED

    @property
    def failed(self) -> bool:
        return self.entry.delivery_state is DeliveryState.FAILED


class ActivityLogger:
    """Creates one entry per finished interaction and delivers it with retries.

    Entries are created once per ``(subject, kind)``; whatever state an
    existing entry is in, a second request does not create another. The
    first attempt waits for the settle delay so metadata that arrives just
    after the terminal event (recordings, durations) is included. Failed
    attempts back off exponentially; an entry that exhausts its attempts is
    marked failed and published to supervisors.
    """

    def __init__(
        self,
        repository: ActivityLogRepository,
        sink: CommunicationSink | None,
        interactions: InteractionService,
        resolver: ContactResolver,
        broadcaster: Broadcaster,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 2.0,
        max_backoff_seconds: float = 300.0,
        settle_seconds: float = 10.0,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._sink = sink
        self._interactions = interactions
        self._resolver = resolver
        self._broadcaster = broadcaster
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._settle = timedelta(seconds=settle_seconds)
        self._clock = clock
        self._process_lock = threading.Lock()
        self._unrecorded: dict[tuple[str, ActivityKind], ActivityLogEntry] = {}

    # ------------------------------------------------------------------
    # Entry creation

    def schedule(
        self,
        subject_id: str,
        kind: ActivityKind,
        outcome: str,
        *,
        parent_id: str | None = None,
        contact_external_id: str | None = None,
    ) -> ActivityLogEntry | None:
        """Create the entry for ``subject_id`` unless it already exists.

        Returns the new entry, or ``None`` when one was already there or no
        customer-record system is configured.
        """

        if self._sink is None:
            logger.debug("Activity logging disabled; skipping %s %s", kind.value, subject_id)
            return None
        now = self._clock()
        entry = ActivityLogEntry(
            interaction_id=subject_id,
            kind=kind,
            outcome=outcome,
            logged_at=now,
            parent_id=parent_id,
            contact_external_id=contact_external_id,
            next_attempt_at=now + self._settle,
        )
        stored, created = self._repository.create_if_absent(entry)
        if not created:
            logger.debug(
                "Activity log for %s %s already %s",
                kind.value,
                subject_id,
                stored.delivery_state.value,
            )
            return None
        return stored

    def retry(self, subject_id: str, kind: ActivityKind) -> ActivityLogEntry:
        """Re-arm a permanently failed entry for another round of attempts."""

        entry = self._repository.get(subject_id, kind)
        if entry is None:
            raise ActivityLogNotFoundError(f"No {kind.value} activity log for {subject_id}")
        if entry.delivery_state is not DeliveryState.FAILED:
            raise ActivityLogConflictError(
                f"Activity log for {subject_id} is {entry.delivery_state.value}, not failed"
            )
        entry.delivery_state = DeliveryState.PENDING
        entry.attempts = 0
        entry.next_attempt_at = self._clock()
        entry.last_error = None
        self._repository.update(entry)
        logger.info("Activity log for %s %s re-queued", kind.value, subject_id)
        return entry

    def get(self, subject_id: str, kind: ActivityKind) -> ActivityLogEntry | None:
        return self._repository.get(subject_id, kind)

    def list(
        self, *, state: DeliveryState | None = None, limit: int = 50, offset: int = 0
    ) -> list[ActivityLogEntry]:
        return self._repository.list(state=state, limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Delivery

    def process_due(self, limit: int = 100) -> int:
        """Attempt every entry whose next attempt is due; returns how many ran.

        A store failure on one entry is logged and does not stop the rest.
        Entries already accepted by the customer-record system but not yet
        saved as delivered are saved again instead of being re-sent.
        """

        with self._process_lock:
            self._save_unrecorded()
            entries = self._repository.due(self._clock(), limit)
            for entry in entries:
                if (entry.interaction_id, entry.kind) in self._unrecorded:
                    continue
                try:
                    self.log(entry)
                except Exception:
                    logger.exception(
                        "Could not store the %s activity log for %s",
                        entry.kind.value,
                        entry.interaction_id,
                    )
            return len(entries)

    def log(self, entry: ActivityLogEntry) -> DeliveryResult:
        """Make one delivery attempt and record its result on the entry."""

        entry.attempts += 1
        try:
            communication = self._render(entry)
            if self._sink is None:
                raise DeliveryError("No customer-record system configured")
            self._sink.log_communication(communication)
        except Exception as exc:
            return self._record_failure(entry, exc)

        now = self._clock()
        entry.delivery_state = DeliveryState.DELIVERED
        entry.delivered_at = now
        entry.next_attempt_at = None
        entry.last_error = None
        try:
            self._repository.update(entry)
        except Exception:
            self._unrecorded[(entry.interaction_id, entry.kind)] = entry
            raise
        logger.info(
            "Logged %s %s after %d attempt(s)", entry.kind.value, entry.interaction_id, entry.attempts
        )
        return DeliveryResult(entry)

    def _save_unrecorded(self) -> None:
        for key, entry in list(self._unrecorded.items()):
            try:
                self._repository.update(entry)
            except Exception:
                logger.exception(
                    "Still cannot store delivered %s activity log for %s",
                    entry.kind.value,
                    entry.interaction_id,
                )
                continue
            del self._unrecorded[key]
            logger.info("Stored delivered %s activity log for %s", entry.kind.value, entry.interaction_id)

    def backoff_for(self, attempts: int) -> float:
        return min(self._backoff * (2 ** max(attempts - 1, 0)), self._max_backoff)

    def _record_failure(self, entry: ActivityLogEntry, exc: Exception) -> DeliveryResult:
        now = self._clock()
        entry.last_error = str(exc) or type(exc).__name__
        if entry.attempts >= self._max_attempts:
            entry.delivery_state = DeliveryState.FAILED
            entry.next_attempt_at = None
            self._repository.update(entry)
            ACTIVITY_LOG_FAILURES.inc()
            logger.error(
                "Giving up on %s activity log for %s after %d attempts: %s",
                entry.kind.value,
                entry.interaction_id,
                entry.attempts,
                entry.last_error,
            )
            self._broadcaster.publish(
                role_room("supervisor"), "activity_log.failed", entry.to_dict()
            )
            return DeliveryResult(entry)

        delay = self.backoff_for(entry.attempts)
        entry.next_attempt_at = now + timedelta(seconds=delay)
        self._repository.update(entry)
        logger.warning(
            "Activity log for %s %s failed (attempt %d), retrying in %.1fs: %s",
            entry.kind.value,
            entry.interaction_id,
            entry.attempts,
            delay,
            entry.last_error,
        )
        return DeliveryResult(entry)

    # ------------------------------------------------------------------
    # Rendering

    def _render(self, entry: ActivityLogEntry) -> dict[str, Any]:
        if entry.kind is ActivityKind.SMS:
            thread = self._interactions.get(entry.parent_id or "")
            if not isinstance(thread, MessageThread):
                raise DeliveryError(f"Thread {entry.parent_id} not found")
            message = thread.find_message(entry.interaction_id)
            if message is None:
                raise DeliveryError(f"Message {entry.interaction_id} not found")
            customer_id = self._customer_id(entry, thread)
            body = message.body[:SMS_NOTE_LIMIT] if message.body else "No body"
            return {
                "id": message.sid,
                "customerId": customer_id,
                "type": ActivityKind.SMS.value,
                "direction": message.direction.value,
                "timestamp": message.created_at.isoformat(),
                "duration": None,
                "agentId": thread.assigned_worker_id,
                "recordingUrl": None,
                "status": message.state.value,
                "notes": f"SMS Body: {body}",
            }

        interaction = self._interactions.get(entry.interaction_id)
        if interaction is None:
            raise DeliveryError(f"Interaction {entry.interaction_id} not found")
        customer_id = self._customer_id(entry, interaction)
        communication: dict[str, Any] = {
            "id": interaction.id,
            "customerId": customer_id,
            "type": entry.kind.value,
            "direction": interaction.direction.value,
            "timestamp": interaction.created_at.isoformat(),
            "agentId": interaction.assigned_worker_id,
            "status": entry.outcome,
        }
        if isinstance(interaction, Call):
            communication.update(
                duration=interaction.duration_seconds,
                recordingUrl=interaction.recording_url,
                notes=(
                    f"CallSid: {interaction.id}, From: {interaction.from_address}, "
                    f"To: {interaction.to_address}"
                ),
            )
        elif isinstance(interaction, Voicemail):
            communication.update(
                duration=interaction.duration_seconds,
                recordingUrl=interaction.audio_url,
                notes=(
                    "Voicemail transcription: "
                    f"{interaction.transcription or 'Not available'}"
                ),
            )
        return communication

    def _customer_id(self, entry: ActivityLogEntry, interaction: Interaction) -> str | None:
        if entry.contact_external_id:
            return entry.contact_external_id
        if interaction.contact_id:
            entry.contact_external_id = interaction.contact_id
            return interaction.contact_id
        resolution = self._resolver.resolve(interaction.customer_address)
        if resolution.status is ResolutionStatus.DEGRADED:
            raise DeliveryError("Customer record lookup unavailable")
        if resolution.contact is None:
            return None
        contact_id = resolution.contact.external_id
        entry.contact_external_id = contact_id
        self._interactions.update(interaction.id, lambda item: setattr(item, "contact_id", contact_id))
        self._broadcaster.publish(
            interaction_room(interaction.id), "interaction.contact_resolved", {"contact_id": contact_id}
        )
        return contact_id


class ActivityLogPump:
    """Background thread that periodically delivers due entries."""

    def __init__(self, activity: ActivityLogger, *, interval_seconds: float = 2.0) -> None:
        self._activity = activity
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="commhub-activity", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._activity.process_due()
            except Exception:
                logger.exception("Activity log pump iteration failed")
