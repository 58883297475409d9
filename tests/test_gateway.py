import threading
import time

import pytest

from commhub.activity.models import ActivityKind, DeliveryState
from commhub.interactions.models import CallState, VoicemailState
from commhub.realtime.broadcaster import QueueSubscriber, interaction_room
from commhub.routing.rules import PredicateKind
from commhub.scheduling.models import TaskState, WorkerStatus
from commhub.webhooks.gateway import IngestOutcome
from commhub.webhooks.schemas import (
    parse_message,
    parse_recording,
    parse_status,
    parse_transcription,
    parse_voice,
)

CUSTOMER = "+15551230000"
LINE = "+15559990000"


def _voice(call_sid: str = "CA1", **extra):
    return parse_voice({"CallSid": call_sid, "From": CUSTOMER, "To": LINE, **extra})


def _status(call_sid: str, status: str, **extra):
    return parse_status({"CallSid": call_sid, "CallStatus": status, **extra})


def test_inbound_call_is_routed_to_default_queue(platform):
    result = platform.gateway.ingest(_voice())
    assert result.outcome is IngestOutcome.CREATED
    platform.runner.drain()

    call = platform.interactions.get("CA1")
    assert call.queue == "general"
    task = platform.scheduler.get_task(call.task_id)
    assert task.state is TaskState.PENDING
    assert task.interaction_id == "CA1"


def test_redelivered_event_is_duplicate(platform):
    platform.gateway.ingest(_voice())
    platform.runner.drain()

    assert platform.gateway.ingest(_voice()).outcome is IngestOutcome.DUPLICATE
    platform.runner.drain()
    assert len(platform.scheduler.list_tasks()) == 1


def test_status_for_unknown_call_is_orphan(platform):
    result = platform.gateway.ingest(_status("CA404", "completed"))
    assert result.outcome is IngestOutcome.ORPHAN
    assert platform.interactions.get("CA404") is None


def test_call_ending_before_assignment_cancels_its_task(platform):
    platform.gateway.ingest(_voice())
    platform.runner.drain()
    task_id = platform.interactions.get("CA1").task_id

    platform.gateway.ingest(_status("CA1", "no-answer"))

    assert platform.scheduler.get_task(task_id).state is TaskState.CANCELED
    assert platform.interactions.get("CA1").state == CallState.NO_ANSWER.value


def test_concurrent_completed_events_log_activity_once(platform):
    platform.gateway.ingest(_voice())
    platform.runner.drain()

    barrier = threading.Barrier(8)
    outcomes = []

    def _complete(duration: int):
        barrier.wait()
        outcomes.append(
            platform.gateway.ingest(
                _status("CA1", "completed", CallDuration=str(duration))
            ).outcome
        )

    threads = [threading.Thread(target=_complete, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count(IngestOutcome.TRANSITIONED) == 1
    assert outcomes.count(IngestOutcome.NOOP) == 7
    assert platform.interactions.get("CA1").state == CallState.COMPLETED.value
    entries = platform.activity.list()
    assert len(entries) == 1
    assert entries[0].interaction_id == "CA1"
    assert entries[0].kind is ActivityKind.CALL


def test_emergency_keyword_beats_vip_rule(platform, crm):
    crm.add_customer(CUSTOMER, "cust-vip", customer_type="vip")
    platform.routing.add_rule(
        priority=2,
        predicate_kind=PredicateKind.CUSTOMER_TYPE,
        predicate_args={"tiers": ["vip"]},
        target_queue="vip",
    )
    platform.routing.add_rule(
        priority=1,
        predicate_kind=PredicateKind.KEYWORD,
        predicate_args={"keywords": ["emergency"]},
        target_queue="emergency",
    )

    platform.gateway.ingest(_voice(SpeechResult="This is an EMERGENCY at the site"))
    platform.runner.drain()

    call = platform.interactions.get("CA1")
    assert call.contact_id == "cust-vip"
    assert call.queue == "emergency"
    task = platform.scheduler.get_task(call.task_id)
    assert task.queue == "emergency"
    assert task.priority == 10


def test_topic_adds_required_skills(platform):
    platform.scheduler.upsert_worker("W-en", status=WorkerStatus.AVAILABLE)
    platform.scheduler.upsert_worker("W-es", skills=["es"], status=WorkerStatus.AVAILABLE)

    platform.gateway.ingest(_voice(Topic="Spanish"))
    platform.runner.drain()

    task = platform.scheduler.get_task(platform.interactions.get("CA1").task_id)
    assert task.required_skills == ("es",)
    assert task.state is TaskState.RESERVED
    assert task.worker_id == "W-es"


def test_voicemail_divert_end_to_end(platform, clock, crm):
    crm.add_customer(CUSTOMER, "cust-1")
    platform.routing.add_rule(
        priority=1,
        predicate_kind=PredicateKind.KEYWORD,
        predicate_args={"keywords": ["leave a message"]},
        target_queue="voicemail",
    )

    platform.gateway.ingest(_voice(SpeechResult="I want to leave a message"))
    platform.runner.drain()

    call = platform.interactions.get("CA1")
    assert call.state == CallState.VOICEMAIL.value
    assert call.voicemail_id == "CA1-VM"
    voicemail = platform.interactions.get("CA1-VM")
    assert voicemail.state == VoicemailState.RECORDING.value
    assert voicemail.queue == "voicemail"
    assert voicemail.contact_id == "cust-1"

    recording = parse_recording(
        {
            "CallSid": "CA1",
            "RecordingSid": "RE1",
            "RecordingUrl": "https://media.example.com/RE1",
            "RecordingDuration": "17",
        }
    )
    platform.gateway.ingest(recording)
    assert platform.interactions.get("CA1").state == CallState.COMPLETED.value
    voicemail = platform.interactions.get("CA1-VM")
    assert voicemail.state == VoicemailState.TRANSCRIBING.value
    assert voicemail.audio_url == "https://media.example.com/RE1"

    platform.gateway.ingest(
        parse_transcription(
            {"CallSid": "CA1", "TranscriptionText": "Please call back", "TranscriptionStatus": "completed"}
        )
    )
    voicemail = platform.interactions.get("CA1-VM")
    assert voicemail.state == VoicemailState.READY.value
    assert voicemail.transcription == "Please call back"

    clock.advance(10)
    platform.activity.process_due()
    logged = {entry["type"]: entry for entry in crm.logged}
    assert set(logged) == {"call", "voicemail"}
    assert logged["voicemail"]["recordingUrl"] == "https://media.example.com/RE1"
    assert logged["voicemail"]["duration"] == 17
    assert logged["voicemail"]["notes"] == "Voicemail transcription: Please call back"
    assert logged["voicemail"]["customerId"] == "cust-1"


def test_inbound_messages_share_a_thread_and_one_task(platform, clock, crm):
    for sid, body in (("SM1", "hi"), ("SM2", "are you there?")):
        platform.gateway.ingest(
            parse_message({"MessageSid": sid, "From": CUSTOMER, "To": LINE, "Body": body})
        )
        platform.runner.drain()

    thread_id = f"thread:{CUSTOMER}:{LINE}"
    thread = platform.interactions.get(thread_id)
    assert [message.sid for message in thread.messages] == ["SM1", "SM2"]
    assert len(platform.scheduler.list_tasks()) == 1

    clock.advance(10)
    platform.activity.process_due()
    assert sorted(entry["id"] for entry in crm.logged) == ["SM1", "SM2"]
    sms = next(entry for entry in crm.logged if entry["id"] == "SM2")
    assert sms["type"] == "sms"
    assert sms["notes"] == "SMS Body: are you there?"


def test_state_changes_are_broadcast_to_interaction_room(platform):
    subscriber = QueueSubscriber()
    platform.broadcaster.subscribe(subscriber, [interaction_room("CA1")])

    platform.gateway.ingest(_voice())
    platform.runner.drain()
    platform.gateway.ingest(_status("CA1", "in-progress"))

    types = [event.type for event in subscriber.snapshot()]
    assert types[0] == "interaction.created"
    assert "interaction.updated" in types
    assert "task.created" in types
    seqs = [event.seq for event in subscriber.snapshot()]
    assert seqs == sorted(seqs)


def test_completed_call_redelivered_after_failed_side_effects(platform, monkeypatch):
    platform.gateway.ingest(_voice())
    platform.runner.drain()
    task_id = platform.interactions.get("CA1").task_id

    schedule = platform.activity.schedule
    attempts = []

    def _flaky_schedule(*args, **kwargs):
        attempts.append(args)
        if len(attempts) == 1:
            raise RuntimeError("database is locked")
        return schedule(*args, **kwargs)

    monkeypatch.setattr(platform.activity, "schedule", _flaky_schedule)
    completed = _status("CA1", "completed", CallDuration="30")

    with pytest.raises(RuntimeError):
        platform.gateway.ingest(completed)
    assert platform.interactions.get("CA1").state == CallState.COMPLETED.value
    assert platform.activity.list() == []

    # The provider retries the same callback.
    assert platform.gateway.ingest(completed).outcome is IngestOutcome.NOOP
    entry = platform.activity.get("CA1", ActivityKind.CALL)
    assert entry is not None
    assert entry.outcome == "completed"
    assert platform.scheduler.get_task(task_id).state is TaskState.CANCELED

    assert platform.gateway.ingest(completed).outcome is IngestOutcome.DUPLICATE
    assert len(platform.activity.list()) == 1


def test_racing_messages_on_one_thread_create_one_task(platform, crm, monkeypatch):
    find_by_phone = crm.find_by_phone

    def _slow_lookup(phone):
        time.sleep(0.2)
        return find_by_phone(phone)

    monkeypatch.setattr(crm, "find_by_phone", _slow_lookup)

    for sid in ("SM1", "SM2"):
        platform.gateway.ingest(
            parse_message({"MessageSid": sid, "From": CUSTOMER, "To": LINE, "Body": sid})
        )
    platform.runner.drain()

    thread_id = f"thread:{CUSTOMER}:{LINE}"
    tasks = platform.scheduler.list_tasks()
    assert [task.interaction_id for task in tasks] == [thread_id]
    assert platform.interactions.get(thread_id).task_id == tasks[0].id


def test_call_survives_customer_record_outage(platform, clock, crm):
    crm.lookup_error = ConnectionError("customer-record lookup timed out")

    platform.gateway.ingest(_voice())
    platform.runner.drain()
    call = platform.interactions.get("CA1")
    assert call.queue == "general"
    assert call.contact_id is None
    assert platform.scheduler.get_task(call.task_id).state is TaskState.PENDING

    platform.gateway.ingest(_status("CA1", "in-progress"))
    platform.gateway.ingest(_status("CA1", "completed", CallDuration="30"))
    assert platform.interactions.get("CA1").state == CallState.COMPLETED.value

    clock.advance(5)
    platform.activity.process_due()
    entry = platform.activity.get("CA1", ActivityKind.CALL)
    assert entry.attempts == 1
    assert entry.last_error == "Customer record lookup unavailable"

    # Lookups come back before logging does.
    crm.lookup_error = None
    crm.add_customer(CUSTOMER, "cust-1")
    crm.log_failures = 1
    clock.advance(2)
    platform.activity.process_due()
    entry = platform.activity.get("CA1", ActivityKind.CALL)
    assert entry.attempts == 2
    assert entry.last_error == "customer-record system unavailable"
    assert crm.logged == []

    clock.advance(4)
    platform.activity.process_due()
    entry = platform.activity.get("CA1", ActivityKind.CALL)
    assert entry.delivery_state is DeliveryState.DELIVERED
    assert len(crm.logged) == 1
    assert crm.logged[0]["customerId"] == "cust-1"
    assert crm.logged[0]["status"] == "completed"
    assert platform.interactions.get("CA1").contact_id == "cust-1"
