import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from animikii.errors import ActorFault, BorrowViolation, ChannelClosed, UseAfterMove
from animikii.runtime import (
    ActorSystem,
    OwnedMessage,
    OwnershipManager,
    Scheduler,
    actor,
    create,
)


@actor
class Counter:
    def __init__(self):
        self.total = 0
        self.seen = []

    def handle(self, message):
        if message == "bad":
            raise ValueError("bad message")
        self.seen.append(message)
        self.total += message


@actor
class SlowRecorder:
    def __init__(self):
        self.events = []
        self.state = []

    def handle(self, message):
        self.events.append(("enter", message))
        yield
        self.state.append(message)
        self.events.append(("exit", message))


@pytest.fixture
def system():
    return ActorSystem(Scheduler())


def test_messages_fold_in_arrival_order(system):
    ref = system.spawn(Counter())
    for value in range(1, 6):
        assert ref.send(value).done()
    effect = system.run_until_idle()
    assert ref.state.seen == [1, 2, 3, 4, 5]
    assert ref.state.total == 15
    assert ref.processed == 5
    assert ref.status == "running"
    assert effect.grade == "state"
    assert f"send:{ref.actor_id}:msg0" in system.log.entries


def test_handlers_never_overlap_with_concurrent_senders(system):
    ref = system.spawn(SlowRecorder())

    def sender(values):
        for value in values:
            yield ref.send(value)
            yield

    system.scheduler.spawn(sender, ["a1", "a2", "a3"])
    system.scheduler.spawn(sender, ["b1", "b2", "b3"])
    system.run_until_idle()

    events = ref.state.events
    assert len(events) == 12
    for enter, leave in zip(events[::2], events[1::2]):
        assert enter[0] == "enter" and leave[0] == "exit"
        assert enter[1] == leave[1]
    arrival = [message for kind, message in events if kind == "enter"]
    assert ref.state.state == arrival
    assert [m for m in arrival if m.startswith("a")] == ["a1", "a2", "a3"]
    assert [m for m in arrival if m.startswith("b")] == ["b1", "b2", "b3"]


def test_failing_handler_faults_the_actor_but_not_the_sender(system):
    ref = system.spawn(Counter())
    sends = [ref.send(1), ref.send("bad"), ref.send(2)]
    system.run_until_idle()

    assert all(future.done() and future.exception() is None for future in sends)
    assert ref.status == "faulted"
    assert isinstance(ref.fault, ActorFault)
    assert isinstance(ref.fault.cause, ValueError)
    assert ref.fault.message == "bad"
    assert ref.state.seen == [1]
    assert ref.mailbox_size == 1

    assert ref.send(3).done()
    system.run_until_idle()
    assert ref.state.seen == [1]

    assert ref.restart() is True
    system.run_until_idle()
    assert ref.status == "running"
    assert ref.fault is None
    assert len(ref.faults) == 1
    assert ref.state.seen == [1, 2, 3]
    assert ref.restart() is False


def test_stop_discards_the_mailbox(system):
    manager = OwnershipManager()
    shared = manager.wrap(create("i32", 1), "@")
    ref = system.spawn(Counter())
    ref.send(shared)
    assert shared.strong_count == 2

    assert ref.stop() is True
    assert ref.stop() is False
    system.run_until_idle()
    assert ref.status == "stopped"
    assert ref.processed == 0
    assert shared.strong_count == 1
    assert ref.loop_task.state == "cancelled"
    with pytest.raises(ChannelClosed):
        ref.send(1)
    with pytest.raises(RuntimeError):
        ref.restart()


def test_stop_quiesces_the_in_flight_message(system):
    ref = system.spawn(SlowRecorder())
    ref.send("first")
    ref.send("second")

    def stopper():
        yield
        ref.stop()

    system.scheduler.spawn(stopper)
    system.run_until_idle()
    assert ref.status == "stopped"
    assert ref.state.state == ["first"]
    assert ref.processed == 1


def test_owned_messages_move_exactly_once(system):
    ref = system.spawn()
    other = system.spawn()
    message = system.message(ref, "hello")
    assert isinstance(message, OwnedMessage)
    ref.send(message)
    with pytest.raises(UseAfterMove):
        ref.send(message)

    wrong = system.message(ref, "oops")
    with pytest.raises(BorrowViolation):
        other.send(wrong)
    system.run_until_idle()
    assert ref.processed == 1


def test_function_behaviour_and_shard_pinning():
    system = ActorSystem(Scheduler(shards=2))
    seen = []
    first = system.spawn(seen.append)
    second = system.spawn(Counter())
    assert (first.shard, second.shard) == (0, 1)
    assert first.loop_task.shard == first.shard
    assert second.loop_task.shard == second.shard

    first.send("ping")
    system.run_until_idle()
    assert seen == ["ping"]
    assert system.statuses() == {first.actor_id: "running", second.actor_id: "running"}


def test_bounded_mailbox_suspends_the_sender(system):
    ref = system.spawn(SlowRecorder(), capacity=1)

    def flood():
        for value in range(4):
            yield ref.send(value)

    handle = system.scheduler.spawn(flood)
    system.run_until_idle()
    assert handle.state == "completed"
    assert ref.state.state == [0, 1, 2, 3]
    assert "suspended(channel_send)" in handle.history


def test_actors_keep_serializing_on_threaded_shards():
    system = ActorSystem(Scheduler(shards=2))
    refs = [system.spawn(Counter()) for _ in range(2)]
    for ref in refs:
        for value in range(100):
            ref.send(value)
    system.scheduler.run_threaded()
    assert [ref.state.total for ref in refs] == [4950, 4950]
    assert [ref.state.seen for ref in refs] == [list(range(100))] * 2


def test_actor_decorator_requires_handle():
    with pytest.raises(ValueError):

        @actor
        class Broken:
            pass

    with pytest.raises(ValueError):
        ActorSystem().spawn(42)


def test_rejected_owned_message_keeps_its_payload(system):
    manager = OwnershipManager()
    released = []
    ref = system.spawn(Counter())
    ref.stop()
    system.run_until_idle()

    message = system.message(ref, manager.own("file", released.append))
    with pytest.raises(ChannelClosed):
        ref.send(message)
    assert message.is_live
    assert message.drop() is True
    assert released == ["file"]
    assert manager.stats()["live"] == 0


def test_owned_message_does_not_leak_a_shared_reference(system):
    manager = OwnershipManager()
    shared = manager.wrap(create("i32", 1), "@")
    ref = system.spawn()
    ref.send(system.message(ref, shared))
    assert shared.strong_count == 2
    ref.stop()
    system.run_until_idle()
    assert shared.strong_count == 1
