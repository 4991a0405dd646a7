from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .confidential import ConfidentialValue

__all__ = [
    "ConfidentialState",
    "Move",
    "MoveKind",
    "Payout",
    "Phase",
    "Role",
    "SessionInfo",
    "Settlement",
    "Variant",
]


class Phase(str, Enum):
    """Session lifecycle; only ever moves forward."""

    FORMING = "forming"
    ACTIVE = "active"
    SETTLED = "settled"

    @property
    def order(self) -> int:
        return _PHASE_ORDER[self]


_PHASE_ORDER = {Phase.FORMING: 0, Phase.ACTIVE: 1, Phase.SETTLED: 2}


class MoveKind(str, Enum):
    CALL = "call"
    RAISE = "raise"
    FOLD = "fold"


class Variant(str, Enum):
    """Game kind tag; carried for callers, ignored by the engine."""

    TEXAS_HOLDEM = "texas_holdem"
    OMAHA = "omaha"
    SEVEN_CARD_STUD = "seven_card_stud"
    FIVE_CARD_DRAW = "five_card_draw"


class Role(str, Enum):
    PARTICIPANT = "participant"
    OPERATOR = "operator"


@dataclass(frozen=True)
class Move:
    session_id: int
    participant: str
    kind: MoveKind
    sequence_number: int
    round_index: int
    timestamp: float
    confidential_amount: ConfidentialValue | None = None
    plain_amount: int = 0


@dataclass(frozen=True)
class Payout:
    recipient: str
    amount: int
    kind: str  # "win" | "refund" | "remainder"


@dataclass(frozen=True)
class Settlement:
    reason: str
    payouts: tuple[Payout, ...]
    settled_at: float

    @property
    def total(self) -> int:
        return sum(p.amount for p in self.payouts)


@dataclass(frozen=True)
class SessionInfo:
    """Public view of a session; carries no confidential fields."""

    session_id: int
    variant: Variant
    capacity: int
    min_stake: int
    phase: Phase
    roster: tuple[str, ...]
    pot_total: int
    round_index: int
    move_count: int
    folded: tuple[str, ...] = ()
    stakes: tuple[tuple[str, int], ...] = ()
    settlement: Settlement | None = None


@dataclass(frozen=True)
class ConfidentialState:
    participant: str
    cards: tuple[ConfidentialValue, ...]
    folded: ConfidentialValue
    contribution: ConfidentialValue
    plain_total_stake: int
    last_action_at: float
