"""
Runs against a live MongoDB. Set TEST_DATABASE_URL to enable, e.g.
TEST_DATABASE_URL=mongodb://localhost:27017
"""

import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

pytestmark = pytest.mark.skipif(not os.getenv("TEST_DATABASE_URL"), reason="TEST_DATABASE_URL not set")

from ballot_ledger import BallotLedger  # noqa: E402
from config import Settings  # noqa: E402
from database import MongoStorage, connect, ensure_indexes  # noqa: E402
from errors import ConflictError  # noqa: E402
from storage import DuplicateRecordError, StaleWriteError  # noqa: E402


@pytest.fixture
def mongo():
    settings = Settings(database_url=os.environ["TEST_DATABASE_URL"])
    client = connect(settings)
    name = f"ballots_test_{uuid.uuid4().hex[:8]}"
    storage = MongoStorage(client, name)
    ensure_indexes(storage.db)
    yield storage
    client.drop_database(name)
    client.close()


def test_assignment_unique_constraint(mongo):
    doc = {"voter_id": "v1", "election_id": "e1", "issued_at": datetime.now(timezone.utc), "voted_at": None}
    mongo.insert_assignment(doc)
    with pytest.raises(DuplicateRecordError):
        mongo.insert_assignment(dict(doc))


def test_concurrent_ensure_assigned(mongo):
    ledger = BallotLedger(mongo)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: ledger.ensure_assigned("v1", "e1"), range(16)))
    assert sum(1 for _, created in results if created) <= 1
    assert mongo.db["ballotassignment"].count_documents({"voter_id": "v1"}) == 1


def test_mark_voted_is_conditional(mongo):
    ledger = BallotLedger(mongo)
    assignment, _ = ledger.ensure_assigned("v1", "e1")
    ledger.mark_voted(assignment)
    with pytest.raises(ConflictError):
        ledger.mark_voted(assignment)
    assert mongo.count_voted_assignments("e1") == 1


def test_election_replace_checks_version(mongo):
    mongo.replace_active_election({"id": "e1", "version": 1}, None)
    with pytest.raises(StaleWriteError):
        mongo.replace_active_election({"id": "e1", "version": 1}, None)
    mongo.replace_active_election({"id": "e1", "version": 2}, 1)
    with pytest.raises(StaleWriteError):
        mongo.replace_active_election({"id": "e1", "version": 3}, 1)
    assert mongo.get_active_election() == {"id": "e1", "version": 2}


def test_pending_votes_lifecycle(mongo):
    doc = {"receipt": "r1", "election_id": "e1", "selections": [], "submitted_at": datetime.now(timezone.utc), "committed": False}
    mongo.insert_vote(doc)
    with pytest.raises(DuplicateRecordError):
        mongo.insert_vote(dict(doc))
    assert list(mongo.iter_votes("e1")) == []
    assert mongo.set_vote_committed("r1")
    assert not mongo.delete_pending_vote("r1")
    assert [v["receipt"] for v in mongo.iter_votes("e1")] == ["r1"]


def test_vote_documents_carry_no_object_id(mongo):
    now = datetime.now(timezone.utc)
    doc = {"receipt": "r2", "election_id": "e1", "selections": [], "submitted_at": now, "committed": False,
           "pending_since": now}
    mongo.insert_vote(doc)
    assert mongo.set_vote_committed("r2")
    raw = mongo.db["anonymousvote"].find_one({"receipt": "r2"})
    assert raw["_id"] == "r2"
    assert "pending_since" not in raw
