"""
MongoDB access for the Anonymous Ballot API.

Collections are named after the lowercased schema class (see schemas.py).
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from config import Settings
from storage import DuplicateRecordError, MemoryStorage, StaleWriteError, Storage

logger = logging.getLogger(__name__)

ACTIVE_ELECTION_KEY = "active"


def connect(settings: Settings) -> MongoClient:
    return MongoClient(settings.database_url, tz_aware=True)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict.setdefault("created_at", datetime.now(timezone.utc))
    result = db[collection_name].insert_one(data_dict, session=session)
    return str(result.inserted_id)


def ensure_indexes(db: Database) -> None:
    db["ballotassignment"].create_index(
        [("voter_id", ASCENDING), ("election_id", ASCENDING)], unique=True
    )
    db["ballotassignment"].create_index([("election_id", ASCENDING), ("voted_at", ASCENDING)])
    db["anonymousvote"].create_index([("receipt", ASCENDING)], unique=True)
    db["anonymousvote"].create_index([("election_id", ASCENDING), ("committed", ASCENDING)])
    db["auditlog"].create_index([("created_at", DESCENDING)])


def _strip_id(doc: Optional[dict]) -> Optional[dict]:
    if doc is not None:
        doc.pop("_id", None)
    return doc


class MongoStorage(Storage):
    def __init__(self, client: MongoClient, database_name: str, transactions: bool = False):
        self.client = client
        self.db = client[database_name]
        self.supports_transactions = transactions

    @contextmanager
    def transaction(self):
        with self.client.start_session() as session:
            with session.start_transaction():
                yield session

    def ping(self):
        self.client.admin.command("ping")
        return {
            "backend": "mongo",
            "database": self.db.name,
            "collections": self.db.list_collection_names(),
        }

    # --------- Election ---------

    def get_active_election(self):
        doc = self.db["election"].find_one({"_id": ACTIVE_ELECTION_KEY})
        return _strip_id(doc)

    def replace_active_election(self, doc, expected_version):
        body = dict(doc)
        body["_id"] = ACTIVE_ELECTION_KEY
        if expected_version is None:
            try:
                self.db["election"].insert_one(body)
            except DuplicateKeyError as exc:
                raise StaleWriteError("an election already exists") from exc
            return
        res = self.db["election"].replace_one(
            {"_id": ACTIVE_ELECTION_KEY, "version": expected_version}, body
        )
        if res.matched_count == 0:
            raise StaleWriteError("election version changed")

    # --------- Ballot assignments ---------

    def find_assignment(self, voter_id, election_id):
        doc = self.db["ballotassignment"].find_one({"voter_id": voter_id, "election_id": election_id})
        return _strip_id(doc)

    def insert_assignment(self, doc):
        try:
            create_document(self.db, "ballotassignment", doc)
        except DuplicateKeyError as exc:
            raise DuplicateRecordError("ballot assignment exists") from exc

    def mark_assignment_voted(self, voter_id, election_id, voted_at, session=None):
        try:
            doc = self.db["ballotassignment"].find_one_and_update(
                {"voter_id": voter_id, "election_id": election_id, "voted_at": None},
                {"$set": {"voted_at": voted_at}},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        except OperationFailure as exc:
            # a write conflict inside a transaction means another submission won
            if exc.has_error_label("TransientTransactionError"):
                return None
            raise
        return _strip_id(doc)

    def count_voted_assignments(self, election_id):
        return self.db["ballotassignment"].count_documents(
            {"election_id": election_id, "voted_at": {"$ne": None}}
        )

    # --------- Anonymous votes ---------

    def insert_vote(self, doc, session=None):
        try:
            # the receipt doubles as _id so no ObjectId timestamp is stored
            self.db["anonymousvote"].insert_one(dict(doc, _id=doc["receipt"]), session=session)
        except DuplicateKeyError as exc:
            raise DuplicateRecordError("receipt exists") from exc

    def find_vote(self, receipt):
        return _strip_id(self.db["anonymousvote"].find_one({"receipt": receipt}))

    def set_vote_committed(self, receipt):
        res = self.db["anonymousvote"].update_one(
            {"receipt": receipt}, {"$set": {"committed": True}, "$unset": {"pending_since": ""}}
        )
        return res.matched_count > 0

    def delete_pending_vote(self, receipt):
        res = self.db["anonymousvote"].delete_one({"receipt": receipt, "committed": False})
        return res.deleted_count > 0

    def iter_votes(self, election_id, committed=True):
        cursor = self.db["anonymousvote"].find(
            {"election_id": election_id, "committed": committed},
            projection={"_id": False},
        ).sort("receipt", ASCENDING)
        for doc in cursor:
            yield doc

    def count_votes(self, election_id, committed=True):
        return self.db["anonymousvote"].count_documents({"election_id": election_id, "committed": committed})

    # --------- Audit ---------

    def insert_audit(self, doc):
        create_document(self.db, "auditlog", doc)

    def list_audit(self, limit=100):
        items = list(self.db["auditlog"].find().sort("created_at", DESCENDING).limit(limit))
        for it in items:
            it["_id"] = str(it["_id"])  # make JSON serializable
        return items


def get_storage(settings: Settings) -> Storage:
    if settings.storage_backend == "memory":
        logger.warning("Using in-memory storage; data is lost on restart")
        return MemoryStorage()
    if settings.storage_backend != "mongo":
        raise ValueError(f"unknown STORAGE_BACKEND {settings.storage_backend!r}")
    storage = MongoStorage(connect(settings), settings.database_name, settings.mongo_transactions)
    try:
        ensure_indexes(storage.db)
    except PyMongoError:
        logger.exception("Could not create MongoDB indexes")
        raise
    return storage
