from __future__ import annotations

import itertools
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from ...core.config import EngineConfig
from ...core.confidential import CipherCapability, ConfidentialValue, VaultCipher
from ...core.dealer import Dealer, DeckDealer
from ...core.errors import SessionNotFound
from ...core.ledger import Ledger
from ...core.models import (
    ConfidentialState,
    Move,
    MoveKind,
    Phase,
    Role,
    SessionInfo,
    Settlement,
    Variant,
)
from .concurrency import run_blocking
from .engine import Session, validate_parameters
from .policies import get_policy

__all__ = ["RegistryStats", "SessionRegistry"]

logger = logging.getLogger(__name__)


def _index_key(participant: str) -> str:
    return (participant or "").strip()


@dataclass(frozen=True)
class RegistryStats:
    total_sessions: int
    forming: int
    active: int
    settled: int
    participants: int


class SessionRegistry:
    """Process-wide arena of sessions plus a participant reverse index.

    The registry lock only guards the arena and the index; it is never held
    while a session operation runs, so different sessions proceed in parallel.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        cipher: CipherCapability | None = None,
        dealer: Dealer | None = None,
        ledger: Ledger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config if config is not None else EngineConfig()
        self.cipher: CipherCapability = cipher if cipher is not None else VaultCipher()
        self.dealer: Dealer = dealer if dealer is not None else DeckDealer(seed=self.config.deck_seed)
        self.ledger = ledger if ledger is not None else Ledger()
        self._policy = get_policy(self.config.fallback_policy)
        self._clock = clock
        self._sessions: dict[int, Session] = {}
        self._by_participant: dict[str, list[int]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ lifecycle
    def create_session(self, variant: Variant | str, capacity: int, min_stake: int) -> int:
        validate_parameters(capacity, min_stake, variant, self.config)
        with self._lock:
            session_id = next(self._ids)
            session = Session(
                session_id,
                capacity=capacity,
                min_stake=min_stake,
                variant=variant,
                config=self.config,
                cipher=self.cipher,
                dealer=self.dealer,
                ledger=self.ledger,
                policy=self._policy,
                clock=self._clock,
            )
            self._sessions[session_id] = session
        logger.info(
            "session created",
            extra={"session_id": session_id, "variant": session.variant.value, "capacity": capacity, "min_stake": min_stake},
        )
        return session_id

    def join(self, session_id: int, participant: str, stake: int) -> SessionInfo:
        info = self._require_session(session_id).join(participant, stake)
        with self._lock:
            self._by_participant.setdefault(_index_key(participant), []).append(session_id)
        return info

    def apply_move(
        self,
        session_id: int,
        participant: str,
        kind: MoveKind | str,
        confidential_amount: ConfidentialValue | None = None,
        plain_amount: int = 0,
    ) -> Move:
        return self._require_session(session_id).apply_move(participant, kind, confidential_amount, plain_amount)

    def reveal_cards(self, session_id: int, participant: str, cards: Sequence[int]) -> int:
        return self._require_session(session_id).reveal_cards(participant, cards)

    def encrypt_amount(self, session_id: int, participant: str, amount: int) -> ConfidentialValue:
        return self._require_session(session_id).encrypt_amount(participant, amount)

    # ------------------------------------------------------------------ operator
    def refund_equal_split(self, session_id: int, caller_role: Role | str) -> Settlement:
        return self._require_session(session_id).refund_equal_split(caller_role)

    def retry_settlement(self, session_id: int, caller_role: Role | str) -> Settlement:
        return self._require_session(session_id).retry_settlement(caller_role)

    def authorize_auditor(self, session_id: int, auditor: str, caller_role: Role | str) -> None:
        self._require_session(session_id).authorize_auditor(auditor, caller_role)

    def stale_sessions(self, now: float | None = None) -> list[int]:
        """Sessions idle past the liveness window that the refund path would accept."""

        current = self._clock() if now is None else now
        with self._lock:
            sessions = list(self._sessions.values())
        return [
            s.session_id
            for s in sessions
            if s.phase is not Phase.SETTLED
            and (s.settlement_pending or s.idle_for(current) >= self.config.liveness_window)
        ]

    # ------------------------------------------------------------------ reads
    def session_info(self, session_id: int) -> SessionInfo:
        return self._require_session(session_id).info()

    def own_confidential_state(self, session_id: int, participant: str, requester: str) -> ConfidentialState:
        return self._require_session(session_id).confidential_state(participant, requester)

    def moves(self, session_id: int) -> tuple[Move, ...]:
        return self._require_session(session_id).moves()

    def sessions_for(self, participant: str) -> list[int]:
        with self._lock:
            return list(self._by_participant.get(_index_key(participant), ()))

    def total_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)

    def stats(self) -> RegistryStats:
        with self._lock:
            sessions = list(self._sessions.values())
            participants = len(self._by_participant)
        phases = [s.phase for s in sessions]
        return RegistryStats(
            total_sessions=len(sessions),
            forming=phases.count(Phase.FORMING),
            active=phases.count(Phase.ACTIVE),
            settled=phases.count(Phase.SETTLED),
            participants=participants,
        )

    # ------------------------------------------------------------------ async wrappers
    async def create_session_async(self, variant: Variant | str, capacity: int, min_stake: int) -> int:
        return await run_blocking(self.create_session, variant, capacity, min_stake)

    async def join_async(self, session_id: int, participant: str, stake: int) -> SessionInfo:
        return await run_blocking(self.join, session_id, participant, stake)

    async def apply_move_async(
        self,
        session_id: int,
        participant: str,
        kind: MoveKind | str,
        confidential_amount: ConfidentialValue | None = None,
        plain_amount: int = 0,
    ) -> Move:
        return await run_blocking(self.apply_move, session_id, participant, kind, confidential_amount, plain_amount)

    async def reveal_cards_async(self, session_id: int, participant: str, cards: Sequence[int]) -> int:
        return await run_blocking(self.reveal_cards, session_id, participant, cards)

    async def encrypt_amount_async(self, session_id: int, participant: str, amount: int) -> ConfidentialValue:
        return await run_blocking(self.encrypt_amount, session_id, participant, amount)

    async def session_info_async(self, session_id: int) -> SessionInfo:
        return await run_blocking(self.session_info, session_id)

    async def own_confidential_state_async(
        self, session_id: int, participant: str, requester: str
    ) -> ConfidentialState:
        return await run_blocking(self.own_confidential_state, session_id, participant, requester)

    async def moves_async(self, session_id: int) -> tuple[Move, ...]:
        return await run_blocking(self.moves, session_id)

    async def refund_equal_split_async(self, session_id: int, caller_role: Role | str) -> Settlement:
        return await run_blocking(self.refund_equal_split, session_id, caller_role)

    async def retry_settlement_async(self, session_id: int, caller_role: Role | str) -> Settlement:
        return await run_blocking(self.retry_settlement, session_id, caller_role)

    async def authorize_auditor_async(self, session_id: int, auditor: str, caller_role: Role | str) -> None:
        await run_blocking(self.authorize_auditor, session_id, auditor, caller_role)

    def _require_session(self, session_id: int) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"session '{session_id}' not found")
        return session
