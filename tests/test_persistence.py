import dataclasses

import pytest

from commhub.activity.models import DeliveryState
from commhub.interactions.models import MessageState, MessageThread
from commhub.platform import build_platform
from commhub.routing.rules import PredicateKind
from commhub.scheduling.models import TaskState, WorkerStatus
from commhub.scheduling.timers import DeadlineTimer
from commhub.webhooks.gateway import IngestOutcome
from commhub.webhooks.schemas import parse_message, parse_message_status, parse_voice

CUSTOMER = "+15551230000"
LINE = "+15559990000"


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'commhub.db'}"


@pytest.fixture
def sql_settings(settings, database_url):
    return dataclasses.replace(settings, database_url=database_url)


def _build(sql_settings, clock, crm):
    return build_platform(sql_settings, clock=clock, crm=crm, timer=DeadlineTimer(clock=clock))


def test_state_survives_a_restart(sql_settings, clock, crm):
    crm.add_customer(CUSTOMER, "cust-1")
    first = _build(sql_settings, clock, crm)
    try:
        rule = first.routing.add_rule(
            priority=1,
            predicate_kind=PredicateKind.KEYWORD,
            predicate_args={"keyword": "billing"},
            target_queue="billing",
        )
        first.scheduler.upsert_worker("W1", status=WorkerStatus.AVAILABLE)
        first.gateway.ingest(
            parse_voice(
                {"CallSid": "CA1", "From": CUSTOMER, "To": LINE, "SpeechResult": "billing question"}
            )
        )
        first.runner.drain()
        task_id = first.interactions.get("CA1").task_id
        assert first.scheduler.get_task(task_id).state is TaskState.RESERVED
    finally:
        first.runner.shutdown()

    second = _build(sql_settings, clock, crm)
    try:
        call = second.interactions.get("CA1")
        assert call.contact_id == "cust-1"
        assert call.queue == "billing"
        assert call.created_at.tzinfo is not None
        assert [r.id for r in second.routing.snapshot()] == [rule.id]
        assert second.routing.snapshot()[0].predicate_args == {"keywords": ("billing",)}
        # The worker is still available, so the requeued task is reserved again.
        task = second.scheduler.get_task(task_id)
        assert task.state is TaskState.RESERVED
        assert second.scheduler.get_worker("W1").active_task_count == 1
        # Redelivery after the restart is still recognised.
        replay = second.gateway.ingest(
            parse_voice(
                {"CallSid": "CA1", "From": CUSTOMER, "To": LINE, "SpeechResult": "billing question"}
            )
        )
        assert replay.outcome is IngestOutcome.DUPLICATE
    finally:
        second.runner.shutdown()


def test_message_status_and_activity_log_in_sql(sql_settings, clock, crm):
    platform = _build(sql_settings, clock, crm)
    try:
        platform.gateway.record_outbound_message(
            sid="SMout", line_address=LINE, customer_address=CUSTOMER, body="On our way"
        )
        result = platform.gateway.ingest(
            parse_message_status({"MessageSid": "SMout", "MessageStatus": "delivered"})
        )
        assert result.outcome is IngestOutcome.TRANSITIONED

        platform.gateway.ingest(
            parse_message({"MessageSid": "SMin", "From": CUSTOMER, "To": LINE, "Body": "thanks"})
        )
        platform.runner.drain()

        thread = platform.interactions.get(f"thread:{CUSTOMER}:{LINE}")
        assert isinstance(thread, MessageThread)
        assert thread.find_message("SMout").state is MessageState.DELIVERED
        assert thread.find_message("SMin").body == "thanks"

        assert platform.activity.process_due() == 0
        clock.advance(5)
        assert platform.activity.process_due() == 2
        assert {entry["id"] for entry in crm.logged} == {"SMout", "SMin"}
        assert all(
            entry.delivery_state is DeliveryState.DELIVERED
            for entry in platform.activity.list()
        )
    finally:
        platform.runner.shutdown()
