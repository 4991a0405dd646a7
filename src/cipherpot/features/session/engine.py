"""The session state machine.

A session moves Forming -> Active -> Settled and never back.  Every public
operation runs under the session's :class:`SessionGuard`, so it is applied as
one indivisible step relative to any other operation on the same session.
Two transitions carry side effects by contract: the join that fills the
roster also deals hands and starts play, and the move that leaves one player
standing (or exhausts the round limit) also settles the pot.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from typing import Final

from ...core import feature_flags
from ...core.config import EngineConfig
from ...core.confidential import CipherCapability, ConfidentialValue, ValueKind
from ...core.dealer import Dealer
from ...core.errors import (
    AlreadyFolded,
    AlreadyJoined,
    InsufficientStake,
    InvalidConfiguration,
    InvalidMove,
    InvalidPhase,
    NotAuthorized,
    NotInSession,
    SessionClosed,
    SessionFull,
    SettlementFailed,
)
from ...core.ledger import Ledger
from ...core.models import (
    ConfidentialState,
    Move,
    MoveKind,
    Payout,
    Phase,
    Role,
    SessionInfo,
    Settlement,
    Variant,
)
from .concurrency import SessionGuard
from .player import PlayerState
from .policies import WinnerPolicy, split_shares

__all__ = ["Session", "scope_for", "validate_parameters"]

logger = logging.getLogger(__name__)

REASON_LAST_STANDING: Final = "last_player_standing"
REASON_ROUND_LIMIT: Final = "round_limit"
REASON_REFUND: Final = "refund_equal_split"


def validate_parameters(capacity: int, min_stake: int, variant: Variant | str, config: EngineConfig) -> Variant:
    """Check creation parameters and return the normalised variant."""

    if isinstance(capacity, bool) or not isinstance(capacity, int):
        raise InvalidConfiguration(f"capacity must be an integer, got {capacity!r}")
    if not 2 <= capacity <= config.max_capacity:
        raise InvalidConfiguration(f"capacity must be between 2 and {config.max_capacity}, got {capacity}")
    if isinstance(min_stake, bool) or not isinstance(min_stake, int) or min_stake <= 0:
        raise InvalidConfiguration(f"min_stake must be a positive integer, got {min_stake!r}")
    try:
        return Variant(variant)
    except ValueError as exc:
        raise InvalidConfiguration(f"unknown variant {variant!r}") from exc


def _move_kind(kind: MoveKind | str) -> MoveKind:
    try:
        return MoveKind(kind)
    except ValueError as exc:
        raise InvalidMove(f"unknown move kind {kind!r}") from exc


def scope_for(session_id: int) -> str:
    return f"session-{session_id}"


def _identity(participant: str) -> str:
    ident = (participant or "").strip()
    if not ident:
        raise InvalidMove("participant identity cannot be empty")
    return ident


class Session:
    def __init__(
        self,
        session_id: int,
        *,
        capacity: int,
        min_stake: int,
        variant: Variant | str,
        config: EngineConfig,
        cipher: CipherCapability,
        dealer: Dealer,
        ledger: Ledger,
        policy: WinnerPolicy,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.variant = validate_parameters(capacity, min_stake, variant, config)
        self.session_id = session_id
        self.scope = scope_for(session_id)
        self.capacity = capacity
        self.min_stake = min_stake
        self._config = config
        self._cipher = cipher
        self._dealer = dealer
        self._ledger = ledger
        self._policy = policy
        self._clock = clock
        self._guard = SessionGuard(self.scope)

        self._phase = Phase.FORMING
        self._roster: list[str] = []
        self._players: dict[str, PlayerState] = {}
        self._moves: list[Move] = []
        self._round_index = 0
        self._acted: set[str] = set()
        self._auditors: set[str] = set()
        self._pending: tuple[list[tuple[str, int]], str] | None = None
        self._settlement: Settlement | None = None
        self.created_at = clock()
        self._last_activity = self.created_at

        ledger.open_account(session_id, min_stake)

    # ------------------------------------------------------------------ plain views
    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def roster(self) -> tuple[str, ...]:
        return tuple(self._roster)

    @property
    def pot_total(self) -> int:
        return self._ledger.balance(self.session_id)

    @property
    def round_index(self) -> int:
        return self._round_index

    @property
    def settlement_pending(self) -> bool:
        return self._pending is not None

    def idle_for(self, now: float | None = None) -> float:
        current = self._clock() if now is None else now
        return max(0.0, current - self._last_activity)

    # ------------------------------------------------------------------ formation
    def join(self, participant: str, stake: int) -> SessionInfo:
        ident = _identity(participant)
        with self._guard.hold():
            self._require_open()
            if self._phase is not Phase.FORMING:
                raise InvalidPhase(f"session {self.session_id} is {self._phase.value}; joining is closed")
            if ident in self._players:
                raise AlreadyJoined(f"'{ident}' already joined session {self.session_id}")
            if len(self._roster) >= self.capacity:
                raise SessionFull(f"session {self.session_id} is full")
            if isinstance(stake, bool) or not isinstance(stake, int) or stake < self.min_stake:
                raise InsufficientStake(f"stake {stake!r} is below the minimum of {self.min_stake}")

            seats = [*self._roster, ident]
            fills = len(seats) == self.capacity
            # Deal before touching any state so a dealer failure leaves the session as it was.
            hands = self._dealer.deal(self.scope, seats, self._config.hand_size) if fills else None

            now = self._clock()
            player = PlayerState.fresh(
                ident, self._cipher, scope=self.scope, hand_size=self._config.hand_size, now=now
            )
            self._ledger.deposit(self.session_id, ident, stake)
            player.credit_stake(stake)
            self._roster.append(ident)
            self._players[ident] = player
            self._last_activity = now
            logger.info(
                "participant joined",
                extra={"session_id": self.session_id, "participant": ident, "seats": len(self._roster)},
            )

            if hands is not None:
                self._start_play(hands)
            self._check_conservation(strict_only=True)
            return self._info()

    def _start_play(self, hands: dict[str, list[int]]) -> None:
        for ident in self._roster:
            self._players[ident].replace_cards(self._cipher, hands.pop(ident), scope=self.scope)
        self._advance(Phase.ACTIVE)
        self._round_index = 1
        logger.info(
            "session active",
            extra={"session_id": self.session_id, "seats": len(self._roster), "pot": self.pot_total},
        )

    # ------------------------------------------------------------------ play
    def apply_move(
        self,
        participant: str,
        kind: MoveKind | str,
        confidential_amount: ConfidentialValue | None = None,
        plain_amount: int = 0,
    ) -> Move:
        move_kind = _move_kind(kind)
        with self._guard.hold():
            self._require_open()
            if self._phase is not Phase.ACTIVE:
                raise InvalidPhase(f"session {self.session_id} is {self._phase.value}; moves need an active session")
            if self._pending is not None:
                raise InvalidPhase(f"session {self.session_id} has a pending settlement")
            player = self._players.get(participant)
            if player is None:
                raise NotInSession(f"'{participant}' is not seated in session {self.session_id}")
            if player.folded:
                raise AlreadyFolded(f"'{participant}' has already folded")
            raise_amount = self._validate_amounts(move_kind, confidential_amount, plain_amount)

            now = self._clock()
            if raise_amount is not None:
                staged = player.stage_contribution(self._cipher, self._phase, raise_amount)
                if plain_amount > 0:
                    self._ledger.deposit(self.session_id, participant, plain_amount, is_raise=True)
                player.commit_contribution(self._cipher, staged, plain_amount)
            elif move_kind is MoveKind.FOLD:
                player.apply_fold(self._cipher, scope=self.scope)
            player.record_activity(now)

            move = Move(
                session_id=self.session_id,
                participant=participant,
                kind=move_kind,
                sequence_number=len(self._moves) + 1,
                round_index=self._round_index,
                timestamp=now,
                confidential_amount=raise_amount,
                plain_amount=plain_amount if raise_amount is not None else 0,
            )
            self._moves.append(move)
            self._acted.add(participant)
            self._last_activity = now
            logger.debug(
                "move applied",
                extra={
                    "session_id": self.session_id,
                    "participant": participant,
                    "kind": move_kind.value,
                    "sequence": move.sequence_number,
                },
            )

            self._check_conservation(strict_only=True)
            self._evaluate_termination()
            return move

    def _validate_amounts(
        self,
        kind: MoveKind,
        confidential_amount: ConfidentialValue | None,
        plain_amount: int,
    ) -> ConfidentialValue | None:
        """Check a move's amounts; returns the confidential raise amount, or None for other kinds."""

        if isinstance(plain_amount, bool) or not isinstance(plain_amount, int):
            raise InvalidMove(f"plain amount must be an integer, got {plain_amount!r}")
        if kind is not MoveKind.RAISE:
            if confidential_amount is not None or plain_amount:
                raise InvalidMove(f"a {kind.value} carries no amount")
            return None
        if confidential_amount is None:
            raise InvalidMove("a raise needs a confidential amount")
        if confidential_amount.scope != self.scope:
            raise NotAuthorized(f"confidential amount does not belong to session {self.session_id}")
        if self._cipher.resolve(confidential_amount.handle) != confidential_amount:
            raise NotAuthorized("confidential amount was not issued for this session")
        if confidential_amount.kind is not ValueKind.SCALAR:
            raise InvalidMove("a raise amount must be a confidential scalar")
        if plain_amount < 0:
            raise InvalidMove("plain amount cannot be negative")
        return confidential_amount

    def _evaluate_termination(self) -> None:
        active = [ident for ident in self._roster if not self._players[ident].folded]
        if len(active) == 1:
            self._settle_pot([(active[0], self.pot_total)], REASON_LAST_STANDING)
            return
        if not all(ident in self._acted for ident in active):
            return
        self._complete_round()
        limit = self._config.round_limit
        if limit is not None and self._round_index - 1 >= limit:
            winners = self._fallback_winners(active)
            self._settle_pot(split_shares(self.pot_total, winners), REASON_ROUND_LIMIT)

    def _complete_round(self) -> None:
        self._round_index += 1
        self._acted.clear()
        for ident in self._roster:
            self._players[ident].reset_round(self._cipher, scope=self.scope)
        logger.debug("betting round completed", extra={"session_id": self.session_id, "round": self._round_index})

    def _fallback_winners(self, active: Sequence[str]) -> list[str]:
        chosen = [w for w in self._policy(tuple(self._roster), tuple(active)) if w in self._players]
        if not chosen:
            logger.warning(
                "fallback policy produced no seated winner; using first active seat",
                extra={"session_id": self.session_id},
            )
            chosen = [(list(active) or self._roster)[0]]
        return list(dict.fromkeys(chosen))

    # ------------------------------------------------------------------ reveal
    def reveal_cards(self, participant: str, cards: Sequence[int]) -> int:
        with self._guard.hold():
            self._require_open()
            player = self._players.get(participant)
            if player is None:
                raise NotInSession(f"'{participant}' is not seated in session {self.session_id}")
            written = player.replace_cards(self._cipher, list(cards), scope=self.scope)
            logger.debug(
                "cards re-encrypted",
                extra={"session_id": self.session_id, "participant": participant, "slots": written},
            )
            return written

    def encrypt_amount(self, participant: str, amount: int) -> ConfidentialValue:
        """Encrypt a bet amount in this session's scope for a seated participant."""

        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
            raise InvalidMove(f"amount must be a non-negative integer, got {amount!r}")
        with self._guard.hold():
            self._require_open()
            if participant not in self._players:
                raise NotInSession(f"'{participant}' is not seated in session {self.session_id}")
            value = self._cipher.encrypt(amount, scope=self.scope)
            self._cipher.authorize_reveal(value, participant, scope=self.scope)
            return value

    # ------------------------------------------------------------------ operator paths
    def refund_equal_split(self, caller_role: Role) -> Settlement:
        with self._guard.hold():
            self._require_role(caller_role, "refund a session")
            self._require_open()
            idle = self.idle_for()
            if self._pending is None and idle < self._config.liveness_window:
                raise InvalidPhase(
                    f"session {self.session_id} is still live (idle {idle:.0f}s of {self._config.liveness_window:.0f}s)"
                )
            roster = tuple(self._roster)
            return self._settle_with(
                lambda: self._ledger.refund_equal_split(
                    self.session_id, roster, fallback_account=self._config.fallback_account
                ),
                REASON_REFUND,
                recipients=None,
            )

    def retry_settlement(self, caller_role: Role) -> Settlement:
        with self._guard.hold():
            self._require_role(caller_role, "retry settlement")
            self._require_open()
            if self._pending is None:
                raise InvalidPhase(f"session {self.session_id} has no pending settlement")
            recipients, reason = self._pending
            return self._settle_pot(recipients, reason)

    def authorize_auditor(self, auditor: str, caller_role: Role) -> None:
        ident = _identity(auditor)
        with self._guard.hold():
            self._require_role(caller_role, "authorize an auditor")
            self._auditors.add(ident)
        logger.info("auditor authorized", extra={"session_id": self.session_id, "auditor": ident})

    # ------------------------------------------------------------------ settlement
    def _settle_pot(self, recipients: list[tuple[str, int]], reason: str) -> Settlement:
        return self._settle_with(
            lambda: self._ledger.disburse(self.session_id, recipients),
            reason,
            recipients=recipients,
        )

    def _settle_with(
        self,
        pay: Callable[[], tuple[Payout, ...]],
        reason: str,
        *,
        recipients: list[tuple[str, int]] | None,
    ) -> Settlement:
        self._check_conservation()
        try:
            payouts = pay()
        except SettlementFailed:
            if recipients is not None:
                self._pending = (list(recipients), reason)
            logger.warning(
                "settlement failed; session left active",
                extra={"session_id": self.session_id, "reason": reason, "pending": self._pending is not None},
            )
            raise
        settlement = Settlement(reason=reason, payouts=payouts, settled_at=self._clock())
        self._pending = None
        self._settlement = settlement
        self._advance(Phase.SETTLED)
        for player in self._players.values():
            player.seal()
        logger.info(
            "session settled",
            extra={"session_id": self.session_id, "reason": reason, "total": settlement.total},
        )
        return settlement

    # ------------------------------------------------------------------ reads
    def info(self) -> SessionInfo:
        with self._guard.hold():
            return self._info()

    def moves(self) -> tuple[Move, ...]:
        with self._guard.hold():
            return tuple(self._moves)

    def settlement(self) -> Settlement | None:
        with self._guard.hold():
            return self._settlement

    def confidential_state(self, participant: str, requester: str) -> ConfidentialState:
        with self._guard.hold():
            if requester != participant and requester not in self._auditors:
                logger.warning(
                    "confidential state request rejected",
                    extra={"session_id": self.session_id, "participant": participant, "requester": requester},
                )
                raise NotAuthorized(f"'{requester}' may not read the confidential state of '{participant}'")
            player = self._players.get(participant)
            if player is None:
                raise NotInSession(f"'{participant}' is not seated in session {self.session_id}")
            if requester != participant:
                for value in player.owned_values():
                    self._cipher.authorize_reveal(value, requester, scope=self.scope)
            return player.snapshot()

    def _info(self) -> SessionInfo:
        return SessionInfo(
            session_id=self.session_id,
            variant=self.variant,
            capacity=self.capacity,
            min_stake=self.min_stake,
            phase=self._phase,
            roster=tuple(self._roster),
            pot_total=self.pot_total,
            round_index=self._round_index,
            move_count=len(self._moves),
            folded=tuple(ident for ident in self._roster if self._players[ident].folded),
            stakes=tuple((ident, self._players[ident].plain_total_stake) for ident in self._roster),
            settlement=self._settlement,
        )

    # ------------------------------------------------------------------ invariants
    def _advance(self, target: Phase) -> None:
        if target.order <= self._phase.order:
            raise InvalidPhase(f"cannot move session {self.session_id} from {self._phase.value} to {target.value}")
        logger.debug(
            "phase changed",
            extra={"session_id": self.session_id, "from_phase": self._phase.value, "to_phase": target.value},
        )
        self._phase = target

    def _require_open(self) -> None:
        if self._phase is Phase.SETTLED:
            raise SessionClosed(f"session {self.session_id} is settled")

    def _require_role(self, caller_role: Role | str, action: str) -> None:
        try:
            role = Role(caller_role)
        except ValueError:
            role = None
        if role is not Role.OPERATOR:
            logger.warning(
                "operator action rejected",
                extra={"session_id": self.session_id, "action": action, "role": str(caller_role)},
            )
            raise NotAuthorized(f"only an operator may {action}")

    def _check_conservation(self, *, strict_only: bool = False) -> None:
        if strict_only and not feature_flags.is_enabled(feature_flags.STRICT_CONSERVATION):
            return
        if self._phase is Phase.SETTLED:
            return
        balance = self._ledger.balance(self.session_id)
        staked = sum(player.plain_total_stake for player in self._players.values())
        if balance != staked:
            raise AssertionError(
                f"conservation violated in session {self.session_id}: ledger={balance} stakes={staked}"
            )
