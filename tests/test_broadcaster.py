import threading

from commhub.realtime.broadcaster import (
    GLOBAL_ROOM,
    Broadcaster,
    QueueSubscriber,
    queue_room,
    worker_room,
)


def test_subscribers_only_see_their_rooms():
    broadcaster = Broadcaster()
    general = QueueSubscriber()
    worker = QueueSubscriber()
    broadcaster.subscribe(general, [queue_room("general")])
    broadcaster.subscribe(worker, [worker_room("W1"), GLOBAL_ROOM])

    broadcaster.publish(queue_room("general"), "task.created", {"id": "t1"})
    broadcaster.publish(worker_room("W1"), "task.reserved", {"id": "t1"})

    assert [e.type for e in general.snapshot()] == ["task.created"]
    assert [e.type for e in worker.snapshot()] == ["task.reserved"]
    assert worker.snapshot()[0].to_dict() == {
        "room": "worker:W1",
        "seq": 1,
        "type": "task.reserved",
        "data": {"id": "t1"},
    }


def test_concurrent_publishers_keep_room_order():
    broadcaster = Broadcaster()
    first = QueueSubscriber(max_events=10_000)
    second = QueueSubscriber(max_events=10_000)
    broadcaster.subscribe(first, [GLOBAL_ROOM])
    broadcaster.subscribe(second, [GLOBAL_ROOM])

    def _publish(name: str):
        for index in range(200):
            broadcaster.publish(GLOBAL_ROOM, "tick", {"publisher": name, "index": index})

    threads = [threading.Thread(target=_publish, args=(str(n),)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    seen_first = [(e.seq, e.data["publisher"], e.data["index"]) for e in first.snapshot()]
    seen_second = [(e.seq, e.data["publisher"], e.data["index"]) for e in second.snapshot()]
    assert [seq for seq, _, _ in seen_first] == list(range(1, 801))
    assert seen_first == seen_second


def test_slow_subscriber_is_dropped_without_affecting_others():
    broadcaster = Broadcaster()
    slow = QueueSubscriber(max_events=1)
    healthy = QueueSubscriber()
    broadcaster.subscribe(slow, [GLOBAL_ROOM])
    broadcaster.subscribe(healthy, [GLOBAL_ROOM])

    broadcaster.publish(GLOBAL_ROOM, "a", {})
    broadcaster.publish(GLOBAL_ROOM, "b", {})
    broadcaster.publish(GLOBAL_ROOM, "c", {})

    assert [e.type for e in slow.snapshot()] == ["a"]
    assert [e.type for e in healthy.snapshot()] == ["a", "b", "c"]
    assert broadcaster.subscriber_count(GLOBAL_ROOM) == 1


def test_unsubscribe_everywhere():
    broadcaster = Broadcaster()
    subscriber = QueueSubscriber()
    broadcaster.subscribe(subscriber, [GLOBAL_ROOM, queue_room("general")])

    broadcaster.unsubscribe(subscriber)
    broadcaster.publish(GLOBAL_ROOM, "a", {})
    broadcaster.publish(queue_room("general"), "b", {})

    assert subscriber.snapshot() == []


def test_publish_many_deduplicates_rooms():
    broadcaster = Broadcaster()
    subscriber = QueueSubscriber()
    broadcaster.subscribe(subscriber, [GLOBAL_ROOM])

    broadcaster.publish_many([GLOBAL_ROOM, GLOBAL_ROOM], "a", {})

    assert len(subscriber.snapshot()) == 1


def test_publishing_to_empty_rooms_keeps_no_state():
    broadcaster = Broadcaster()

    for index in range(200):
        assert broadcaster.publish(queue_room(f"q{index}"), "task.created", {}) is None

    assert broadcaster.room_count() == 0
    assert broadcaster.subscriber_count(queue_room("q0")) == 0


def test_rooms_are_forgotten_once_empty():
    broadcaster = Broadcaster()
    staying = QueueSubscriber()
    leaving = QueueSubscriber()
    broadcaster.subscribe(staying, [GLOBAL_ROOM])
    broadcaster.subscribe(leaving, [GLOBAL_ROOM, worker_room("W1"), worker_room("W2")])
    assert broadcaster.room_count() == 3

    broadcaster.unsubscribe(leaving, [worker_room("W1")])
    assert broadcaster.room_count() == 2

    broadcaster.unsubscribe(leaving)
    assert broadcaster.room_count() == 1
    assert broadcaster.subscriber_count(GLOBAL_ROOM) == 1


def test_dropping_the_last_subscriber_forgets_the_room():
    broadcaster = Broadcaster()
    slow = QueueSubscriber(max_events=1)
    broadcaster.subscribe(slow, [queue_room("general")])

    broadcaster.publish(queue_room("general"), "a", {})
    broadcaster.publish(queue_room("general"), "b", {})

    assert broadcaster.room_count() == 0

    fresh = QueueSubscriber()
    broadcaster.subscribe(fresh, [queue_room("general")])
    broadcaster.publish(queue_room("general"), "c", {})
    assert [(e.seq, e.type) for e in fresh.snapshot()] == [(1, "c")]
