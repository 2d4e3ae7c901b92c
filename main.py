import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from auth import Actor, InvalidToken, actor_from_header
from config import Settings, configure_logging
from database import get_storage
from errors import ErrorCode, VotingError
from schemas import (
    BallotView,
    Election,
    ElectionSetup,
    ReceiptStatus,
    ReconcileReport,
    Selection,
    TallyReport,
    VoteReceipt,
)
from service import VotingService

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    ErrorCode.NOT_ELIGIBLE: 403,
    ErrorCode.ALREADY_VOTED: 403,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.CONFLICT: 409,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.PRECONDITION_FAILED: 403,
    ErrorCode.NOT_AUTHORIZED: 403,
    ErrorCode.CONSISTENCY_ERROR: 500,
}

router = APIRouter()


def get_service(request: Request) -> VotingService:
    service = request.app.state.service
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


def current_actor(
    request: Request,
    authorization: Optional[str] = Header(None),
    service: VotingService = Depends(get_service),
) -> Actor:
    try:
        return actor_from_header(request.app.state.settings, authorization)
    except InvalidToken as exc:
        service.record_auth_failure(str(exc))
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def voting_error_handler(request: Request, exc: VotingError) -> JSONResponse:
    if exc.code == ErrorCode.CONSISTENCY_ERROR:
        logger.error("consistency error on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, 400),
        content={"detail": jsonable_encoder(exc.to_dict())},
    )


@router.get("/")
def root():
    return {"message": "Voting API running"}


@router.get("/test")
def test_database(service: VotingService = Depends(get_service)):
    response = {
        "backend": "✅ Running",
        "storage": "❌ Not Available",
        "collections": [],
    }
    try:
        info = service.storage.ping()
        response["storage"] = f"✅ Connected ({info.get('backend')})"
        response["collections"] = info.get("collections", [])
    except Exception as e:
        response["storage"] = f"❌ Error: {str(e)[:80]}"
    return response


# --------- Ballots & votes ---------

class SubmitVoteRequest(BaseModel):
    election_id: Optional[str] = None
    selections: List[Selection]


@router.get("/api/ballot", response_model=BallotView)
def request_ballot(
    election_id: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    service: VotingService = Depends(get_service),
):
    return service.request_ballot(actor, election_id)


@router.post("/api/vote", response_model=VoteReceipt)
def submit_vote(
    payload: SubmitVoteRequest,
    actor: Actor = Depends(current_actor),
    service: VotingService = Depends(get_service),
):
    return service.submit_vote(actor, payload.election_id, payload.selections)


@router.get("/api/receipts/{receipt}", response_model=ReceiptStatus)
def verify_receipt(receipt: str, service: VotingService = Depends(get_service)):
    return service.verify_receipt(receipt)


@router.get("/api/results", response_model=TallyReport)
def view_results(election_id: Optional[str] = None, service: VotingService = Depends(get_service)):
    return service.view_results(election_id)


# --------- Admin ---------

@router.post("/api/admin/election", response_model=Election, status_code=201)
def setup_election(
    payload: ElectionSetup,
    actor: Actor = Depends(current_actor),
    service: VotingService = Depends(get_service),
):
    return service.setup_election(actor, payload)


@router.post("/api/admin/election/open", response_model=Election)
def open_election(actor: Actor = Depends(current_actor), service: VotingService = Depends(get_service)):
    return service.open_election(actor)


@router.post("/api/admin/election/close", response_model=Election)
def close_election(actor: Actor = Depends(current_actor), service: VotingService = Depends(get_service)):
    return service.close_election(actor)


@router.post("/api/admin/tally", response_model=TallyReport)
def run_tally(
    election_id: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    service: VotingService = Depends(get_service),
):
    return service.run_tally(actor, election_id)


@router.post("/api/admin/results/publish", response_model=Election)
def publish_results(actor: Actor = Depends(current_actor), service: VotingService = Depends(get_service)):
    return service.publish_results(actor)


@router.post("/api/admin/reconcile", response_model=ReconcileReport)
def reconcile_votes(
    election_id: Optional[str] = None,
    actor: Actor = Depends(current_actor),
    service: VotingService = Depends(get_service),
):
    return service.reconcile_votes(actor, election_id)


@router.get("/api/admin/audit")
def list_audit_logs(
    limit: int = Query(100, ge=1, le=1000),
    actor: Actor = Depends(current_actor),
    service: VotingService = Depends(get_service),
):
    return {"items": service.list_audit_logs(actor, limit)}


def create_app(settings: Optional[Settings] = None, service: Optional[VotingService] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        if app_instance.state.service is None:
            app_instance.state.service = VotingService.from_settings(settings, get_storage(settings))
        yield

    app_instance = FastAPI(title="Anonymous Ballot API", lifespan=lifespan)
    app_instance.state.settings = settings
    app_instance.state.service = service
    app_instance.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app_instance.add_exception_handler(VotingError, voting_error_handler)
    app_instance.include_router(router)
    return app_instance


app = create_app()
