from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from ...core import feature_flags
from ...core.errors import (
    AlreadyFolded,
    AlreadyJoined,
    CipherpotError,
    InsufficientStake,
    InvalidConfiguration,
    InvalidMove,
    InvalidPhase,
    NotAuthorized,
    NotInSession,
    ReentrantCall,
    SessionFull,
    SessionNotFound,
    SettlementFailed,
    UnsupportedOperation,
)
from ...core.models import MoveKind, Role, Variant
from .schemas import (
    AccountPayload,
    ConfidentialHandlePayload,
    ConfidentialStatePayload,
    MovePayload,
    SessionInfoPayload,
    SettlementPayload,
    StatsPayload,
)
from .service import SessionRegistry

__all__ = [
    "AuditorRequest",
    "CreateSessionRequest",
    "JoinRequest",
    "MoveRequest",
    "RevealRequest",
    "ValueRequest",
    "create_session_routers",
    "error_status",
]

logger = logging.getLogger(__name__)

PARTICIPANT_HEADER = "X-Participant"
OPERATOR_HEADER = "X-Operator-Token"

_STATUS_BY_ERROR: tuple[tuple[type[CipherpotError], int], ...] = (
    (SessionNotFound, 404),
    (NotAuthorized, 403),
    (SettlementFailed, 503),
    (InvalidConfiguration, 400),
    (InvalidMove, 400),
    (InsufficientStake, 400),
    (UnsupportedOperation, 400),
    (InvalidPhase, 409),
    (SessionFull, 409),
    (AlreadyJoined, 409),
    (NotInSession, 409),
    (AlreadyFolded, 409),
    (ReentrantCall, 409),
)


def error_status(exc: CipherpotError) -> int:
    for kind, status in _STATUS_BY_ERROR:
        if isinstance(exc, kind):
            return status
    return 400


class CreateSessionRequest(BaseModel):
    variant: Variant = Variant.TEXAS_HOLDEM
    capacity: int
    min_stake: int

    @field_validator("variant", mode="before")
    @classmethod
    def _normalize_variant(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_").replace(" ", "_")
        return value


class JoinRequest(BaseModel):
    participant: str = Field(..., min_length=1)
    stake: int


class MoveRequest(BaseModel):
    participant: str = Field(..., min_length=1)
    kind: MoveKind
    amount_handle: str | None = None
    plain_amount: int = 0


class ValueRequest(BaseModel):
    participant: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0)


class RevealRequest(BaseModel):
    participant: str = Field(..., min_length=1)
    cards: list[int]


class AuditorRequest(BaseModel):
    auditor: str = Field(..., min_length=1)


class _SessionController:
    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    # ------------------------------------------------------------------ helpers
    def _role(self, request: Request) -> Role:
        expected = self.registry.config.operator_token
        supplied = request.headers.get(OPERATOR_HEADER, "")
        if expected and supplied and hmac.compare_digest(expected, supplied):
            return Role.OPERATOR
        return Role.PARTICIPANT

    def _json(self, data: object, status: int = 200) -> JSONResponse:
        return JSONResponse(data, status_code=status)

    def _error(self, exc: CipherpotError) -> JSONResponse:
        status = error_status(exc)
        if status >= 500:
            logger.warning("request failed", extra={"code": exc.code, "status": status})
        return self._json({"detail": exc.message, "code": exc.code}, status)

    # ------------------------------------------------------------------ actions
    async def create(self, body: CreateSessionRequest) -> JSONResponse:
        try:
            sid = await self.registry.create_session_async(body.variant, body.capacity, body.min_stake)
        except CipherpotError as exc:
            return self._error(exc)
        return self._json({"session": sid}, 201)

    async def info(self, sid: int) -> JSONResponse:
        try:
            info = await self.registry.session_info_async(sid)
        except CipherpotError as exc:
            return self._error(exc)
        return self._json(SessionInfoPayload.of(info).to_dict())

    async def join(self, sid: int, body: JoinRequest) -> JSONResponse:
        try:
            info = await self.registry.join_async(sid, body.participant, body.stake)
        except CipherpotError as exc:
            return self._error(exc)
        return self._json(SessionInfoPayload.of(info).to_dict())

    async def move(self, sid: int, body: MoveRequest) -> JSONResponse:
        try:
            amount = self.registry.cipher.resolve(body.amount_handle) if body.amount_handle else None
            move = await self.registry.apply_move_async(sid, body.participant, body.kind, amount, body.plain_amount)
            info = await self.registry.session_info_async(sid)
        except CipherpotError as exc:
            return self._error(exc)
        return self._json({"move": MovePayload.of(move).to_dict(), "session": SessionInfoPayload.of(info).to_dict()})

    async def value(self, sid: int, body: ValueRequest) -> JSONResponse:
        try:
            value = await self.registry.encrypt_amount_async(sid, body.participant, body.amount)
        except CipherpotError as exc:
            return self._error(exc)
        return self._json(ConfidentialHandlePayload.of(value).to_dict(), 201)

    async def moves(self, sid: int) -> JSONResponse:
        try:
            moves = await self.registry.moves_async(sid)
        except CipherpotError as exc:
            return self._error(exc)
        return self._json({"moves": [MovePayload.of(m).to_dict() for m in moves]})

    async def reveal(self, sid: int, body: RevealRequest) -> JSONResponse:
        try:
            written = await self.registry.reveal_cards_async(sid, body.participant, body.cards)
        except CipherpotError as exc:
            return self._error(exc)
        return self._json({"written": written})

    async def confidential(self, request: Request, sid: int, participant: str) -> JSONResponse:
        requester = request.headers.get(PARTICIPANT_HEADER, "")
        try:
            state = await self.registry.own_confidential_state_async(sid, participant, requester)
        except CipherpotError as exc:
            return self._error(exc)
        return self._json(ConfidentialStatePayload.of(state).to_dict())

    async def ledger(self, sid: int) -> JSONResponse:
        try:
            await self.registry.session_info_async(sid)
            account = self.registry.ledger.account(sid)
        except CipherpotError as exc:
            return self._error(exc)
        return self._json(AccountPayload.of(account).to_dict())

    async def refund(self, request: Request, sid: int) -> JSONResponse:
        try:
            settlement = await self.registry.refund_equal_split_async(sid, self._role(request))
        except CipherpotError as exc:
            return self._error(exc)
        return self._json(SettlementPayload.of(settlement).to_dict())

    async def retry(self, request: Request, sid: int) -> JSONResponse:
        try:
            settlement = await self.registry.retry_settlement_async(sid, self._role(request))
        except CipherpotError as exc:
            return self._error(exc)
        return self._json(SettlementPayload.of(settlement).to_dict())

    async def auditors(self, request: Request, sid: int, body: AuditorRequest) -> JSONResponse:
        try:
            await self.registry.authorize_auditor_async(sid, body.auditor, self._role(request))
        except CipherpotError as exc:
            return self._error(exc)
        return self._json({"auditor": body.auditor.strip()})

    async def participant_sessions(self, participant: str) -> JSONResponse:
        return self._json({"participant": participant, "sessions": self.registry.sessions_for(participant)})

    async def stats(self) -> JSONResponse:
        stats = self.registry.stats()
        payload = StatsPayload(
            total_sessions=stats.total_sessions,
            forming=stats.forming,
            active=stats.active,
            settled=stats.settled,
            participants=stats.participants,
            features=sorted(feature_flags.active_flags()),
        )
        return self._json(payload.to_dict())


def create_session_routers(registry: SessionRegistry) -> tuple[APIRouter, APIRouter]:
    """Return the ``/api/v1/sessions`` router and the registry-wide ``/api/v1`` router."""

    controller = _SessionController(registry)

    sessions = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])
    registry_router = APIRouter(prefix="/api/v1", tags=["registry"])

    @sessions.post("")
    async def create_session(body: CreateSessionRequest) -> JSONResponse:
        return await controller.create(body)

    @sessions.get("/{sid}")
    async def get_session(sid: int) -> JSONResponse:
        return await controller.info(sid)

    @sessions.post("/{sid}/join")
    async def join_session(sid: int, body: JoinRequest) -> JSONResponse:
        return await controller.join(sid, body)

    @sessions.post("/{sid}/moves")
    async def post_move(sid: int, body: MoveRequest) -> JSONResponse:
        return await controller.move(sid, body)

    @sessions.post("/{sid}/values")
    async def encrypt_value(sid: int, body: ValueRequest) -> JSONResponse:
        return await controller.value(sid, body)

    @sessions.get("/{sid}/moves")
    async def list_moves(sid: int) -> JSONResponse:
        return await controller.moves(sid)

    @sessions.post("/{sid}/reveal")
    async def reveal_cards(sid: int, body: RevealRequest) -> JSONResponse:
        return await controller.reveal(sid, body)

    @sessions.get("/{sid}/players/{participant}/confidential")
    async def confidential_state(request: Request, sid: int, participant: str) -> JSONResponse:
        return await controller.confidential(request, sid, participant)

    @sessions.get("/{sid}/ledger")
    async def ledger_account(sid: int) -> JSONResponse:
        return await controller.ledger(sid)

    @sessions.post("/{sid}/refund")
    async def refund(request: Request, sid: int) -> JSONResponse:
        return await controller.refund(request, sid)

    @sessions.post("/{sid}/settlement/retry")
    async def retry_settlement(request: Request, sid: int) -> JSONResponse:
        return await controller.retry(request, sid)

    @sessions.post("/{sid}/auditors")
    async def authorize_auditor(request: Request, sid: int, body: AuditorRequest) -> JSONResponse:
        return await controller.auditors(request, sid, body)

    @registry_router.get("/participants/{participant}/sessions")
    async def participant_sessions(participant: str) -> JSONResponse:
        return await controller.participant_sessions(participant)

    @registry_router.get("/stats")
    async def stats() -> JSONResponse:
        return await controller.stats()

    return sessions, registry_router
