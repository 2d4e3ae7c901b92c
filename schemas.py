"""
Database Schemas for the Anonymous Ballot API

Each Pydantic model that is stored corresponds to a MongoDB collection
(lowercased class name).

Collections:
- Election: The single active election snapshot (contests, window, flags).
- BallotAssignment: One record per (voter_id, election_id); marks completion.
- AnonymousVote: Vote content keyed by an opaque receipt. Holds no voter data.
- AuditLog: Write-only log of security-relevant actions.

The remaining models are request/response payloads.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


TallyResult = Dict[str, Dict[str, int]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# --------- Election ---------

class Candidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Candidate id, unique within its contest")
    name: str = Field(..., description="Candidate name")
    description: Optional[str] = None


class Contest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Contest id, unique within the election")
    title: str = Field(...)
    description: Optional[str] = None
    max_selections: int = Field(1, ge=1, description="Upper bound on selected candidates")
    candidates: List[Candidate] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_candidates(self):
        ids = [c.id for c in self.candidates]
        if len(ids) != len(set(ids)):
            raise ValueError(f"duplicate candidate id in contest {self.id}")
        return self

    def candidate_ids(self) -> List[str]:
        return [c.id for c in self.candidates]


class ElectionSetup(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    start_at: datetime
    end_at: datetime
    contests: List[Contest] = Field(default_factory=list)

    @field_validator("start_at", "end_at")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return as_utc(v)

    @model_validator(mode="after")
    def check_window_and_contests(self):
        if self.start_at >= self.end_at:
            raise ValueError("start_at must be before end_at")
        ids = [c.id for c in self.contests]
        if len(ids) != len(set(ids)):
            raise ValueError("duplicate contest id")
        return self


class Election(BaseModel):
    """Immutable election snapshot. Transitions produce a new version."""

    model_config = ConfigDict(frozen=True)

    id: str
    version: int = Field(1, ge=1)
    name: str
    description: Optional[str] = None
    start_at: datetime
    end_at: datetime
    is_open: bool = False
    is_published: bool = False
    contests: List[Contest] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    tallied_at: Optional[datetime] = None

    @field_validator("start_at", "end_at", "created_at", "opened_at", "closed_at", "tallied_at")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    def contest(self, contest_id: str) -> Optional[Contest]:
        for c in self.contests:
            if c.id == contest_id:
                return c
        return None


# --------- Ballots & votes ---------

class Selection(BaseModel):
    model_config = ConfigDict(frozen=True)

    contest_id: str = Field(...)
    selected_candidate_ids: List[str] = Field(default_factory=list)


class BallotAssignment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    voter_id: str = Field(...)
    election_id: str = Field(...)
    issued_at: datetime
    voted_at: Optional[datetime] = None

    @field_validator("issued_at", "voted_at")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def has_voted(self) -> bool:
        return self.voted_at is not None


class AnonymousVote(BaseModel):
    """Vote content. No field may identify the voter."""

    model_config = ConfigDict(extra="ignore")

    receipt: str = Field(..., description="Opaque, unguessable token handed to the voter")
    election_id: str = Field(...)
    selections: List[Selection] = Field(default_factory=list)
    submitted_at: datetime = Field(..., description="UTC day of submission, never a finer time")
    committed: bool = Field(True, description="False while a two-phase submission is in flight")
    pending_since: Optional[datetime] = Field(None, description="Set only while uncommitted; cleared on commit")

    @field_validator("submitted_at", "pending_since")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    actor: str = "anonymous"
    actor_id: Optional[str] = None
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


# --------- Responses ---------

class BallotView(BaseModel):
    election_id: str
    name: str
    description: Optional[str] = None
    contests: List[Contest]
    is_new: bool = False


class VoteReceipt(BaseModel):
    receipt: str
    message: str = "Vote submitted"


class ReceiptStatus(BaseModel):
    receipt: str
    election_id: str
    submitted_at: datetime


class TallyReport(BaseModel):
    election_id: str
    results: TallyResult
    total_votes: int = 0
    computed_at: datetime = Field(default_factory=utcnow)


class ReconcileReport(BaseModel):
    election_id: str
    voted_assignments: int = 0
    committed_votes: int = 0
    stale_pending: int = 0
    committed: int = 0
    discarded: int = 0
    ambiguous: bool = False
