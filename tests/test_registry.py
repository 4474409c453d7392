import threading

from scrd.constants import NAME_ACCEPTED, USERLIST_BEGIN, USERLIST_END
from scrd.registry import Registry
from scrd.sink import SinkClosed
from scrd.stats import StatsManager


class RecordingSink:
    def __init__(self, label: str) -> None:
        self.label = label
        self.batches: list[list[str]] = []
        self.aborted: str | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<RecordingSink {self.label}>"

    def send(self, lines) -> None:
        if isinstance(lines, str):
            lines = [lines]
        with self._lock:
            self.batches.append(list(lines))

    def abort(self, reason: str) -> None:
        self.aborted = reason

    @property
    def lines(self) -> list[str]:
        return [line for batch in self.batches for line in batch]


class BrokenSink(RecordingSink):
    def send(self, lines) -> None:
        raise BrokenPipeError("broken pipe")


class ClosedSink(RecordingSink):
    def send(self, lines) -> None:
        raise SinkClosed("closed")


def _roster_of(batch: list[str]) -> list[str]:
    start = batch.index(USERLIST_BEGIN)
    end = batch.index(USERLIST_END)
    return batch[start + 1 : end]


def test_claim_welcomes_then_announces_join() -> None:
    reg = Registry()
    alice = RecordingSink("alice")

    assert reg.try_claim("alice", alice, welcome=(NAME_ACCEPTED,))

    assert alice.batches == [
        [NAME_ACCEPTED],
        ["NEW_USER alice", USERLIST_BEGIN, "alice", USERLIST_END],
    ]
    assert reg.roster() == ["alice"]
    assert reg.sink_for("alice") is alice
    assert "alice" in reg


def test_duplicate_claim_is_refused_without_side_effects() -> None:
    reg = Registry()
    alice = RecordingSink("alice")
    impostor = RecordingSink("impostor")
    reg.try_claim("alice", alice)
    before = list(alice.batches)

    assert not reg.try_claim("alice", impostor, welcome=(NAME_ACCEPTED,))

    assert impostor.batches == []
    assert alice.batches == before
    assert reg.sink_for("alice") is alice
    assert len(reg) == 1


def test_empty_name_is_never_claimed() -> None:
    reg = Registry()
    assert not reg.try_claim("", RecordingSink("x"))
    assert len(reg) == 0


def test_second_join_reaches_everyone_with_full_roster() -> None:
    reg = Registry()
    alice = RecordingSink("alice")
    bob = RecordingSink("bob")
    reg.try_claim("alice", alice)

    reg.try_claim("bob", bob, welcome=(NAME_ACCEPTED,))

    expected = ["NEW_USER bob", USERLIST_BEGIN, "alice", "bob", USERLIST_END]
    assert alice.batches[-1] == expected
    assert bob.batches == [[NAME_ACCEPTED], expected]


def test_release_announces_departure_to_remaining_sinks() -> None:
    reg = Registry()
    alice = RecordingSink("alice")
    bob = RecordingSink("bob")
    reg.try_claim("alice", alice)
    reg.try_claim("bob", bob)
    bob_seen = len(bob.batches)

    assert reg.release("bob", bob)

    assert alice.batches[-1] == ["REMOVE_USER bob", USERLIST_BEGIN, "alice", USERLIST_END]
    assert len(bob.batches) == bob_seen
    assert reg.roster() == ["alice"]


def test_release_is_idempotent() -> None:
    reg = Registry()
    alice = RecordingSink("alice")
    bob = RecordingSink("bob")
    reg.try_claim("alice", alice)
    reg.try_claim("bob", bob)

    assert reg.release("bob", bob)
    seen = list(alice.batches)
    assert not reg.release("bob", bob)
    assert not reg.release("bob")

    assert alice.batches == seen
    assert reg.roster() == ["alice"]


def test_release_ignores_empty_and_foreign_owner() -> None:
    reg = Registry()
    alice = RecordingSink("alice")
    reg.try_claim("alice", alice)

    assert not reg.release("")
    assert not reg.release(None)
    assert not reg.release("alice", RecordingSink("other"))
    assert reg.roster() == ["alice"]


def test_roster_becomes_empty_after_last_departure() -> None:
    reg = Registry()
    alice = RecordingSink("alice")
    reg.try_claim("alice", alice)
    assert reg.release("alice")
    assert reg.roster() == []
    assert len(reg) == 0


def test_broadcast_survives_a_failing_recipient() -> None:
    stats = StatsManager()
    reg = Registry(stats=stats)
    alice = RecordingSink("alice")
    broken = BrokenSink("broken")
    carol = RecordingSink("carol")
    reg.try_claim("alice", alice)
    reg.try_claim("broken", broken)
    reg.try_claim("carol", carol)

    delivered = reg.broadcast("MESSAGE alice: hello")

    assert delivered == 2
    assert alice.lines[-1] == "MESSAGE alice: hello"
    assert carol.lines[-1] == "MESSAGE alice: hello"
    assert broken.aborted is not None
    assert stats.get("broadcast_faults") >= 1
    # The failing session is torn down by its own handler, not here.
    assert "broken" in reg


def test_closed_sink_counts_as_failed_delivery() -> None:
    reg = Registry()
    alice = RecordingSink("alice")
    reg.try_claim("alice", alice)
    reg.try_claim("gone", ClosedSink("gone"))

    assert reg.broadcast(["MESSAGE alice: hi"]) == 1
    assert alice.lines[-1] == "MESSAGE alice: hi"


def test_clear_returns_every_sink() -> None:
    reg = Registry()
    sinks = [RecordingSink(f"s{i}") for i in range(3)]
    for i, sink in enumerate(sinks):
        reg.try_claim(f"user{i}", sink)

    cleared = reg.clear()

    assert set(map(id, cleared)) == set(map(id, sinks))
    assert reg.roster() == []


def test_concurrent_identical_claims_have_one_winner() -> None:
    reg = Registry()
    contenders = 16
    barrier = threading.Barrier(contenders)
    results: list[bool] = []
    results_lock = threading.Lock()

    def claim(i: int) -> None:
        sink = RecordingSink(f"c{i}")
        barrier.wait()
        won = reg.try_claim("alice", sink)
        with results_lock:
            results.append(won)

    threads = [threading.Thread(target=claim, args=(i,)) for i in range(contenders)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert reg.roster() == ["alice"]


def test_rosters_stay_consistent_under_churn() -> None:
    stats = StatsManager()
    reg = Registry(stats=stats)
    observer = RecordingSink("observer")
    reg.try_claim("observer", observer)

    failures: list[str] = []

    def churn(i: int) -> None:
        for round_no in range(20):
            name = f"user{i}-{round_no}"
            sink = RecordingSink(name)
            if not reg.try_claim(name, sink):
                failures.append(f"claim {name}")
            reg.broadcast(f"MESSAGE {name}: ping")
            if not reg.release(name, sink):
                failures.append(f"release {name}")

    threads = [threading.Thread(target=churn, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert failures == []
    assert reg.roster() == ["observer"]
    assert stats.get("joins") == 1 + 8 * 20
    assert stats.get("parts") == 8 * 20

    for batch in observer.batches:
        head = batch[0]
        if head.startswith("NEW_USER "):
            assert head[len("NEW_USER ") :] in _roster_of(batch)
            assert "observer" in _roster_of(batch)
        elif head.startswith("REMOVE_USER "):
            assert head[len("REMOVE_USER ") :] not in _roster_of(batch)
