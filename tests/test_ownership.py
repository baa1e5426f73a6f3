import random
import sys
import threading
import time
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from animikii.constants import DYN, EXIT_RUNTIME_DEFECT
from animikii.errors import (
    BorrowViolation,
    DeadlockDetected,
    ResourceReleaseFailure,
    TypeMismatch,
    UseAfterMove,
)
from animikii.runtime import (
    Arena,
    MovedValue,
    OwnershipManager,
    Scheduler,
    Shared,
    Unique,
    create,
    explain_slot,
    normalize_qualifier,
    transfer,
)


@pytest.fixture
def manager():
    return OwnershipManager()


@pytest.mark.parametrize(
    "declared, literal",
    [("i32", 5), ("f64", 1.5), ("str", "text"), ("bool", True), (DYN, [1, 2]), ("map", {"k": 1})],
)
def test_move_out_then_read_always_fails(manager, declared, literal):
    value = create(declared, literal)
    unique = manager.wrap(value, "~")
    assert unique.get() == value

    payload, marker = manager.move_out(unique)
    assert payload == value
    assert isinstance(marker, MovedValue)
    with pytest.raises(UseAfterMove):
        unique.get()
    with pytest.raises(UseAfterMove):
        manager.move_out(unique)
    assert unique.drop() is False


def test_unique_set_keeps_the_declared_type(manager):
    unique = manager.wrap(create("i32", 1), "unique")
    unique.set(2)
    assert unique.get().payload == 2
    with pytest.raises(TypeMismatch):
        unique.set("two")
    assert unique.drop() is True
    with pytest.raises(BorrowViolation):
        unique.drop()


def test_transfer_invalidates_the_source_handle(manager):
    unique = manager.wrap(create("i32", 3), "~")
    moved = transfer(unique)
    assert isinstance(moved, Unique)
    assert moved.get().payload == 3
    with pytest.raises(UseAfterMove):
        unique.get()
    with pytest.raises(UseAfterMove):
        transfer(MovedValue("x"))


def test_shared_finalizes_exactly_once_at_zero(manager):
    value = create("str", "payload")
    shared = manager.wrap(value, "@")
    finalized = []
    shared.on_finalize(finalized.append)

    clone = manager.clone_share(shared)
    assert shared.strong_count == 2
    assert shared.drop() is False
    assert clone.strong_count == 1
    assert finalized == []
    assert clone.drop() is True
    assert finalized == [value]

    with pytest.raises(BorrowViolation):
        clone.drop()
    assert finalized == [value]
    assert "finalize:slot0" in manager.arena.log.entries


def test_shared_cannot_be_moved(manager):
    shared = manager.wrap(create("i32", 1), "@")
    with pytest.raises(BorrowViolation):
        manager.move_out(shared)
    with pytest.raises(BorrowViolation):
        manager.clone_share(manager.wrap(create("i32", 1), "~"))


@pytest.mark.parametrize("seed", range(5))
def test_random_clone_drop_interleavings_never_go_negative(manager, seed):
    rng = random.Random(seed)
    shared = manager.wrap(create("i32", seed), "@")
    finalized = []
    shared.on_finalize(finalized.append)
    handles = [shared]

    for _ in range(200):
        if handles and rng.random() < 0.45:
            handle = handles.pop(rng.randrange(len(handles)))
            last = handle.drop()
            assert last is (not handles)
            if not handles:
                break
        else:
            handles.append(handles[rng.randrange(len(handles))].clone())
        assert handles[0].strong_count == len(handles)
        assert finalized == []

    for handle in handles:
        handle.drop()
    assert len(finalized) == 1


def test_concurrent_clone_drop_finalizes_once(manager):
    shared = manager.wrap(create("i32", 1), "@")
    finalized = []
    shared.on_finalize(finalized.append)

    def churn():
        for _ in range(200):
            clone = shared.clone()
            clone.drop()

    threads = [threading.Thread(target=churn) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert shared.strong_count == 1
    assert finalized == []
    shared.drop()
    assert len(finalized) == 1


def test_weak_get_is_empty_after_last_strong_owner_drops(manager):
    value = create("i32", 10)
    shared = manager.wrap(value, "@")
    weak = manager.downgrade(shared)
    assert shared.strong_count == 1
    assert shared.weak_count == 1
    assert weak.get() == value

    upgraded = weak.upgrade()
    assert upgraded.strong_count == 2
    upgraded.drop()

    assert shared.drop() is True
    assert weak.get() is None
    assert weak.upgrade() is None


def test_stale_weak_never_reads_a_reused_slot(manager):
    shared = manager.wrap(create("i32", 1), "@")
    weak = shared.downgrade()
    shared.drop()

    replacement = manager.wrap(create("i32", 2), "@")
    assert replacement.slot[0] == weak._index
    assert weak.get() is None

    info = explain_slot(manager.arena, weak._index)
    assert info["found"] is True
    assert "generation 1" in info["lines"][0]


def test_weak_requires_a_shared_value(manager):
    with pytest.raises(BorrowViolation):
        manager.wrap(create("i32", 1), "#weak")
    shared = manager.wrap(create("i32", 1), "@")
    weak = manager.wrap(shared, "#weak")
    assert weak.get().payload == 1
    weak.drop()
    with pytest.raises(BorrowViolation):
        weak.get()


def test_sync_with_mutates_and_releases_on_failure(manager):
    sync = manager.wrap(create("i32", 0), "#sync")
    manager.with_(sync, lambda cell: cell.set(5))
    assert sync.peek().payload == 5

    def failing(cell):
        cell.update(lambda value: value.payload + 1)
        raise ValueError("boom")

    with pytest.raises(ValueError):
        manager.with_(sync, failing)
    assert sync.holder is None
    assert sync.peek().payload == 6
    assert manager.with_(sync, lambda cell: cell.get().payload) == 6
    assert sync.sessions == 3


def test_sync_self_reentry_raises_deadlock(manager):
    sync = manager.wrap(create("i32", 0), "sync")

    with pytest.raises(DeadlockDetected):
        manager.with_(sync, lambda cell: manager.with_(sync, lambda inner: None))
    assert sync.holder is None
    assert len(manager.arena.waits) == 0


def test_sync_sessions_never_overlap_across_threads(manager):
    sync = manager.wrap(create("i32", 0), "#sync")
    events = []
    first_inside = threading.Event()

    def first():
        def body(cell):
            events.append("a:enter")
            first_inside.set()
            time.sleep(0.05)
            cell.set(cell.get().payload + 1)
            events.append("a:exit")

        manager.with_(sync, body)

    def second():
        first_inside.wait()

        def body(cell):
            events.append("b:enter")
            cell.set(cell.get().payload + 1)
            events.append("b:exit")

        manager.with_(sync, body)

    threads = [threading.Thread(target=first), threading.Thread(target=second)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert events == ["a:enter", "a:exit", "b:enter", "b:exit"]
    assert sync.peek().payload == 2


def test_sync_clones_share_one_value(manager):
    sync = manager.wrap(create("i32", 0), "#sync")
    other = manager.clone_share(sync)
    other.with_(lambda cell: cell.set(3))
    assert sync.peek().payload == 3
    assert sync.strong_count == 2


def test_own_releases_exactly_once(manager):
    released = []
    resource = manager.own("handle", released.append)
    assert resource.get() == "handle"
    assert resource.close() is True
    assert resource.close() is False
    assert resource.drop() is False
    assert released == ["handle"]
    with pytest.raises(BorrowViolation):
        resource.get()


def test_own_context_manager_releases_on_error(manager):
    released = []
    with pytest.raises(RuntimeError):
        with manager.own("conn", released.append) as conn:
            assert conn == "conn"
            raise RuntimeError("fail inside")
    assert released == ["conn"]


def test_own_release_failure_is_reported_once(manager):
    calls = []

    def release(resource):
        calls.append(resource)
        raise OSError("disk gone")

    resource = manager.wrap("file", "#own", release=release)
    with pytest.raises(ResourceReleaseFailure) as excinfo:
        resource.close()
    assert isinstance(excinfo.value.__cause__, OSError)
    assert resource.close() is False
    assert calls == ["file"]


def test_own_requires_release_and_moves_once(manager):
    with pytest.raises(BorrowViolation):
        manager.wrap("file", "#own")

    released = []
    resource = manager.own("sock", released.append)
    moved = transfer(resource)
    with pytest.raises(UseAfterMove):
        resource.get()
    assert resource.close() is False
    assert moved.close() is True
    assert released == ["sock"]


def test_plain_binding_and_unknown_qualifier(manager):
    value = create("i32", 1)
    assert manager.wrap(value) is value
    assert manager.wrap(value, "plain") is value
    assert normalize_qualifier("@") == "shared"
    with pytest.raises(ValueError):
        normalize_qualifier("&")
    assert manager.drop(value) is False


def test_stats_track_live_slots(manager):
    first = manager.wrap(create("i32", 1), "@")
    manager.wrap(create("i32", 2), "~")
    first.drop()
    stats = manager.stats()
    assert stats["slots"] == 2
    assert stats["live"] == 1
    assert stats["finalized"] == 1


def test_negative_count_is_a_runtime_defect(capsys):
    arena = Arena()
    index, generation = arena.allocate("x")
    assert arena.decref(index, generation) is True
    with pytest.raises(SystemExit) as excinfo:
        arena.decref(index, generation)
    assert excinfo.value.code == EXIT_RUNTIME_DEFECT
    assert "runtime defect" in capsys.readouterr().err


def test_shared_wrapper_type():
    manager = OwnershipManager()
    assert isinstance(manager.wrap(create("i32", 1), "@"), Shared)


def test_moving_a_unique_into_a_task_hands_it_over(manager):
    scheduler = Scheduler()
    unique = manager.wrap(create("i32", 5), "~")

    def first():
        yield
        return unique.get().payload

    owner = scheduler.spawn(first)
    scheduler.run_until_idle()
    assert owner.result() == 5

    def adopt(handle):
        return handle.get().payload
        yield

    adopted = scheduler.spawn(adopt, unique)
    scheduler.run_until_idle()
    assert adopted.result() == 5
    with pytest.raises(UseAfterMove):
        unique.get()
