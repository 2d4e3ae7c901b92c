import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from auth import Actor
from service import VotingService
from storage import MemoryStorage

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

CHAIR = {
    "id": "C1",
    "title": "Chair",
    "max_selections": 1,
    "candidates": [{"id": "A", "name": "Alice"}, {"id": "B", "name": "Bob"}],
}

BOARD = {
    "id": "C2",
    "title": "Board",
    "max_selections": 2,
    "candidates": [
        {"id": "X", "name": "Xavier"},
        {"id": "Y", "name": "Yolanda"},
        {"id": "Z", "name": "Zed"},
    ],
}


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RacingStorage(MemoryStorage):
    """Holds the first ``parties`` assignment lookups at a barrier so every
    caller sees an empty ledger and then races on the insert."""

    def __init__(self, parties: int):
        super().__init__()
        self.barrier = threading.Barrier(parties)
        self._held = 0
        self._held_lock = threading.Lock()

    def find_assignment(self, voter_id, election_id):
        with self._held_lock:
            hold = self._held < self.barrier.parties
            self._held += 1
        result = super().find_assignment(voter_id, election_id)
        if hold:
            self.barrier.wait(timeout=5)
        return result


class TransactionalMemoryStorage(MemoryStorage):
    """Runs each transaction under the storage lock and restores the
    previous records if the block raises."""

    supports_transactions = True

    @contextmanager
    def transaction(self):
        with self._lock:
            saved = copy.deepcopy((self._election, self._assignments, self._votes))
            try:
                yield object()
            except Exception:
                self._election, self._assignments, self._votes = saved
                raise


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def service(storage, clock):
    return VotingService(storage, clock=clock)


@pytest.fixture
def admin():
    return Actor(id="admin-1", role="admin", email="admin@example.org")


@pytest.fixture
def voter():
    return Actor(id="v1", email="v1@example.org")


@pytest.fixture
def election_payload():
    def build(start=None, end=None, contests=None, name="E1"):
        return {
            "name": name,
            "start_at": start or T0 - timedelta(hours=1),
            "end_at": end or T0 + timedelta(hours=8),
            "contests": contests if contests is not None else [CHAIR],
        }
    return build


@pytest.fixture
def open_election(service, admin, election_payload):
    service.setup_election(admin, election_payload(contests=[CHAIR, BOARD]))
    return service.open_election(admin)
