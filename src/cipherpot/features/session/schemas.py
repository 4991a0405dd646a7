from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict

from ...core.confidential import ConfidentialValue
from ...core.models import ConfidentialState, Move, SessionInfo, Settlement
from ...core.ledger import AccountSnapshot

__all__ = [
    "AccountPayload",
    "ConfidentialHandlePayload",
    "ConfidentialStatePayload",
    "MovePayload",
    "PayoutPayload",
    "SessionInfoPayload",
    "SettlementPayload",
    "StatsPayload",
]


class _APIModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ConfidentialHandlePayload(_APIModel):
    handle: str
    kind: str

    @classmethod
    def of(cls, value: ConfidentialValue) -> ConfidentialHandlePayload:
        return cls(handle=value.handle, kind=value.kind.value)


class PayoutPayload(_APIModel):
    recipient: str
    amount: int
    kind: str


class SettlementPayload(_APIModel):
    reason: str
    total: int
    settled_at: float
    payouts: list[PayoutPayload]

    @classmethod
    def of(cls, settlement: Settlement) -> SettlementPayload:
        return cls(
            reason=settlement.reason,
            total=settlement.total,
            settled_at=settlement.settled_at,
            payouts=[PayoutPayload(recipient=p.recipient, amount=p.amount, kind=p.kind) for p in settlement.payouts],
        )


class SessionInfoPayload(_APIModel):
    session_id: int
    variant: str
    capacity: int
    min_stake: int
    phase: str
    roster: list[str]
    pot_total: int
    round_index: int
    move_count: int
    folded: list[str]
    stakes: dict[str, int]
    settlement: SettlementPayload | None = None

    @classmethod
    def of(cls, info: SessionInfo) -> SessionInfoPayload:
        return cls(
            session_id=info.session_id,
            variant=info.variant.value,
            capacity=info.capacity,
            min_stake=info.min_stake,
            phase=info.phase.value,
            roster=list(info.roster),
            pot_total=info.pot_total,
            round_index=info.round_index,
            move_count=info.move_count,
            folded=list(info.folded),
            stakes=dict(info.stakes),
            settlement=SettlementPayload.of(info.settlement) if info.settlement else None,
        )


class MovePayload(_APIModel):
    sequence_number: int
    participant: str
    kind: str
    round_index: int
    timestamp: float
    plain_amount: int
    confidential_amount: ConfidentialHandlePayload | None = None

    @classmethod
    def of(cls, move: Move) -> MovePayload:
        return cls(
            sequence_number=move.sequence_number,
            participant=move.participant,
            kind=move.kind.value,
            round_index=move.round_index,
            timestamp=move.timestamp,
            plain_amount=move.plain_amount,
            confidential_amount=(
                ConfidentialHandlePayload.of(move.confidential_amount) if move.confidential_amount else None
            ),
        )


class ConfidentialStatePayload(_APIModel):
    participant: str
    cards: list[ConfidentialHandlePayload]
    folded: ConfidentialHandlePayload
    contribution: ConfidentialHandlePayload
    plain_total_stake: int
    last_action_at: float

    @classmethod
    def of(cls, state: ConfidentialState) -> ConfidentialStatePayload:
        return cls(
            participant=state.participant,
            cards=[ConfidentialHandlePayload.of(card) for card in state.cards],
            folded=ConfidentialHandlePayload.of(state.folded),
            contribution=ConfidentialHandlePayload.of(state.contribution),
            plain_total_stake=state.plain_total_stake,
            last_action_at=state.last_action_at,
        )


class AccountPayload(_APIModel):
    balance: int
    deposited_total: int
    paid_out_total: int
    unreclaimed: list[PayoutPayload] = []

    @classmethod
    def of(cls, account: AccountSnapshot) -> AccountPayload:
        return cls(
            balance=account.balance,
            deposited_total=account.deposited_total,
            paid_out_total=account.paid_out_total,
            unreclaimed=[PayoutPayload(recipient=p.recipient, amount=p.amount, kind=p.kind) for p in account.unreclaimed],
        )


class StatsPayload(_APIModel):
    total_sessions: int
    forming: int
    active: int
    settled: int
    participants: int
    features: list[str]
