from __future__ import annotations

import pytest

from cipherpot.core import feature_flags
from cipherpot.core.config import EngineConfig
from cipherpot.core.confidential import ConfidentialValue, ValueKind, VaultCipher
from cipherpot.core.dealer import DeckDealer
from cipherpot.core.errors import (
    AlreadyFolded,
    AlreadyJoined,
    InsufficientStake,
    InvalidConfiguration,
    InvalidMove,
    InvalidPhase,
    NotAuthorized,
    NotInSession,
    ReentrantCall,
    SessionClosed,
    SettlementFailed,
)
from cipherpot.core.ledger import CreditBook, Ledger
from cipherpot.core.models import MoveKind, Phase, Role
from cipherpot.features.session.engine import Session
from cipherpot.features.session.policies import get_policy


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class _Table:
    """A session wired to in-memory collaborators the test can inspect."""

    def __init__(
        self,
        capacity: int = 2,
        min_stake: int = 10,
        *,
        config: EngineConfig | None = None,
        dealer: object | None = None,
        gateway: CreditBook | None = None,
    ) -> None:
        self.config = config or EngineConfig(deck_seed=11)
        self.cipher = VaultCipher()
        self.book = gateway or CreditBook()
        self.ledger = Ledger(self.book)
        self.clock = _Clock()
        self.session = Session(
            1,
            capacity=capacity,
            min_stake=min_stake,
            variant="texas_holdem",
            config=self.config,
            cipher=self.cipher,
            dealer=dealer or DeckDealer(seed=self.config.deck_seed),
            ledger=self.ledger,
            policy=get_policy(self.config.fallback_policy),
            clock=self.clock,
        )

    def seat(self, *stakes: tuple[str, int]) -> None:
        for who, stake in stakes:
            self.session.join(who, stake)

    def amount(self, value: int):
        return self.cipher.encrypt(value, scope=self.session.scope)


def _assert_conserved(table: _Table) -> None:
    info = table.session.info()
    assert table.ledger.balance(1) == info.pot_total == sum(stake for _, stake in info.stakes)


# --------------------------------------------------------------------------- scenarios


def test_join_fills_roster_then_activates_and_deals() -> None:
    table = _Table()

    info = table.session.join("P1", 10)
    assert info.phase is Phase.FORMING
    assert info.pot_total == 10
    assert info.round_index == 0

    info = table.session.join("P2", 10)
    assert info.phase is Phase.ACTIVE
    assert info.pot_total == 20
    assert info.round_index == 1
    _assert_conserved(table)

    dealt = []
    for who in ("P1", "P2"):
        state = table.session.confidential_state(who, who)
        cards = [table.cipher.decrypt(card, who) for card in state.cards]
        assert len(cards) == table.config.hand_size
        assert all(card != 0 for card in cards)
        dealt.extend(cards)
    assert len(set(dealt)) == len(dealt)


def test_fold_leaves_last_player_standing_with_the_pot() -> None:
    table = _Table()
    table.seat(("P1", 10), ("P2", 10))

    table.session.apply_move("P1", MoveKind.FOLD)

    info = table.session.info()
    assert info.phase is Phase.SETTLED
    assert info.settlement is not None
    assert info.settlement.reason == "last_player_standing"
    assert [(p.recipient, p.amount) for p in info.settlement.payouts] == [("P2", 20)]
    assert table.book.credits == {"P2": 20}
    assert table.ledger.balance(1) == 0
    assert info.folded == ("P1",)


def test_raise_moves_only_the_public_amount_into_the_pot() -> None:
    table = _Table()
    table.seat(("P1", 10), ("P2", 10))

    move = table.session.apply_move("P1", MoveKind.RAISE, table.amount(5), 5)

    info = table.session.info()
    assert info.pot_total == 25
    assert dict(info.stakes) == {"P1": 15, "P2": 10}
    assert move.sequence_number == 1
    assert move.plain_amount == 5
    state = table.session.confidential_state("P1", "P1")
    assert table.cipher.decrypt(state.contribution, "P1") == 5
    _assert_conserved(table)


def test_operator_refund_splits_equally_with_remainder_to_fallback() -> None:
    table = _Table(capacity=3, min_stake=3, config=EngineConfig(liveness_window=60.0))
    table.seat(("P1", 4), ("P2", 3), ("P3", 3))
    assert table.session.pot_total == 10

    table.clock.advance(61)
    settlement = table.session.refund_equal_split(Role.OPERATOR)

    assert [(p.recipient, p.amount) for p in settlement.payouts] == [
        ("P1", 3),
        ("P2", 3),
        ("P3", 3),
        ("operator", 1),
    ]
    assert table.ledger.balance(1) == 0
    assert table.session.phase is Phase.SETTLED


def test_duplicate_join_is_rejected_without_side_effects() -> None:
    table = _Table(capacity=3)
    table.seat(("P1", 10))

    with pytest.raises(AlreadyJoined):
        table.session.join("P1", 10)

    info = table.session.info()
    assert info.roster == ("P1",)
    assert info.pot_total == 10


# --------------------------------------------------------------------------- formation


@pytest.mark.parametrize(
    "capacity,min_stake,variant",
    [(1, 10, "omaha"), (9, 10, "omaha"), (2, 0, "omaha"), (2, 10, "blackjack")],
)
def test_creation_validates_parameters(capacity: int, min_stake: int, variant: str) -> None:
    with pytest.raises(InvalidConfiguration):
        Session(
            1,
            capacity=capacity,
            min_stake=min_stake,
            variant=variant,
            config=EngineConfig(),
            cipher=VaultCipher(),
            dealer=DeckDealer(),
            ledger=Ledger(),
            policy=get_policy("first_active"),
        )


def test_join_rejects_low_stake_and_active_sessions() -> None:
    table = _Table()
    with pytest.raises(InsufficientStake):
        table.session.join("P1", 9)
    assert table.session.pot_total == 0
    assert table.session.roster == ()

    table.seat(("P1", 10), ("P2", 10))
    with pytest.raises(InvalidPhase):
        table.session.join("P3", 10)
    assert table.session.roster == ("P1", "P2")


def test_join_rejects_blank_identity() -> None:
    with pytest.raises(InvalidMove):
        _Table().session.join("  ", 10)


def test_dealer_failure_leaves_formation_untouched() -> None:
    class _BrokenDealer:
        def deal(self, scope, participants, hand_size):
            raise InvalidConfiguration("deck unavailable")

    table = _Table(dealer=_BrokenDealer())
    table.seat(("P1", 10))

    with pytest.raises(InvalidConfiguration):
        table.session.join("P2", 10)

    info = table.session.info()
    assert info.phase is Phase.FORMING
    assert info.roster == ("P1",)
    assert info.pot_total == 10


# --------------------------------------------------------------------------- moves


def test_move_preconditions() -> None:
    table = _Table(capacity=3)
    table.seat(("P1", 10))
    with pytest.raises(InvalidPhase):
        table.session.apply_move("P1", MoveKind.CALL)

    table.seat(("P2", 10), ("P3", 10))
    with pytest.raises(NotInSession):
        table.session.apply_move("P9", MoveKind.CALL)
    with pytest.raises(InvalidMove):
        table.session.apply_move("P1", "check")
    with pytest.raises(InvalidMove):
        table.session.apply_move("P1", MoveKind.RAISE)
    with pytest.raises(InvalidMove):
        table.session.apply_move("P1", MoveKind.CALL, table.amount(3))
    with pytest.raises(InvalidMove):
        table.session.apply_move("P1", MoveKind.RAISE, table.amount(3), -1)
    with pytest.raises(NotAuthorized):
        table.session.apply_move("P1", MoveKind.RAISE, table.cipher.encrypt(3, scope="session-2"), 3)

    table.session.apply_move("P1", MoveKind.FOLD)
    with pytest.raises(AlreadyFolded):
        table.session.apply_move("P1", MoveKind.CALL)

    assert len(table.session.moves()) == 1
    _assert_conserved(table)


def test_raise_with_a_value_this_cipher_never_issued_changes_nothing() -> None:
    table = _Table()
    table.seat(("P1", 10), ("P2", 10))
    same_scope_elsewhere = VaultCipher().encrypt(5, scope=table.session.scope)
    forged = ConfidentialValue(handle="0" * 32, kind=ValueKind.SCALAR, scope=table.session.scope)

    for amount in (same_scope_elsewhere, forged):
        with pytest.raises(NotAuthorized):
            table.session.apply_move("P1", MoveKind.RAISE, amount, 5)

    info = table.session.info()
    assert info.pot_total == 20
    assert dict(info.stakes) == {"P1": 10, "P2": 10}
    assert table.session.moves() == ()
    state = table.session.confidential_state("P1", "P1")
    assert table.cipher.decrypt(state.contribution, "P1") == 0
    _assert_conserved(table)


def test_encrypt_amount_mints_a_session_scoped_value_for_its_owner() -> None:
    table = _Table()
    table.seat(("P1", 10), ("P2", 10))

    amount = table.session.encrypt_amount("P1", 7)
    assert amount.scope == table.session.scope
    assert table.cipher.decrypt(amount, "P1") == 7
    with pytest.raises(NotAuthorized):
        table.cipher.decrypt(amount, "P2")
    with pytest.raises(NotInSession):
        table.session.encrypt_amount("P9", 1)
    with pytest.raises(InvalidMove):
        table.session.encrypt_amount("P1", -1)

    table.session.apply_move("P1", MoveKind.RAISE, amount, 7)
    assert table.session.pot_total == 27


def test_round_advances_once_every_active_player_has_acted() -> None:
    table = _Table(capacity=3)
    table.seat(("P1", 10), ("P2", 10), ("P3", 10))

    table.session.apply_move("P1", MoveKind.RAISE, table.amount(2), 2)
    table.session.apply_move("P2", MoveKind.CALL)
    assert table.session.round_index == 1
    table.session.apply_move("P3", MoveKind.FOLD)
    assert table.session.round_index == 2

    state = table.session.confidential_state("P1", "P1")
    assert table.cipher.decrypt(state.contribution, "P1") == 0
    assert [m.sequence_number for m in table.session.moves()] == [1, 2, 3]
    assert [m.round_index for m in table.session.moves()] == [1, 1, 1]


def test_round_limit_settles_with_the_fallback_policy() -> None:
    table = _Table(capacity=3, config=EngineConfig(round_limit=1))
    table.seat(("P1", 10), ("P2", 10), ("P3", 10))

    for who in ("P1", "P2", "P3"):
        table.session.apply_move(who, MoveKind.CALL)

    settlement = table.session.settlement()
    assert settlement is not None
    assert settlement.reason == "round_limit"
    assert [(p.recipient, p.amount) for p in settlement.payouts] == [("P1", 30)]


def test_round_limit_split_policy_hands_leftover_units_in_seat_order() -> None:
    table = _Table(capacity=3, config=EngineConfig(round_limit=1, fallback_policy="split_active"))
    table.seat(("P1", 10), ("P2", 10), ("P3", 10))

    table.session.apply_move("P1", MoveKind.RAISE, table.amount(2), 2)
    table.session.apply_move("P2", MoveKind.FOLD)
    table.session.apply_move("P3", MoveKind.CALL)

    settlement = table.session.settlement()
    assert settlement is not None
    assert [(p.recipient, p.amount) for p in settlement.payouts] == [("P1", 16), ("P3", 16)]


def test_settled_session_rejects_mutation_and_phase_never_goes_back() -> None:
    table = _Table()
    table.seat(("P1", 10), ("P2", 10))
    table.session.apply_move("P2", MoveKind.FOLD)

    with pytest.raises(SessionClosed):
        table.session.apply_move("P1", MoveKind.CALL)
    with pytest.raises(SessionClosed):
        table.session.join("P3", 10)
    with pytest.raises(SessionClosed):
        table.session.reveal_cards("P1", [1, 2])
    with pytest.raises(InvalidPhase):
        table.session._advance(Phase.ACTIVE)
    assert table.session.phase is Phase.SETTLED


# --------------------------------------------------------------------------- settlement failure


def test_failed_settlement_keeps_the_move_and_waits_for_an_operator() -> None:
    book = CreditBook()
    book.refuse("P2")
    table = _Table(gateway=book)
    table.seat(("P1", 10), ("P2", 10))

    with pytest.raises(SettlementFailed):
        table.session.apply_move("P1", MoveKind.FOLD)

    assert table.session.phase is Phase.ACTIVE
    assert table.session.settlement_pending
    assert table.session.pot_total == 20
    assert len(table.session.moves()) == 1
    with pytest.raises(InvalidPhase):
        table.session.apply_move("P2", MoveKind.CALL)
    with pytest.raises(NotAuthorized):
        table.session.retry_settlement(Role.PARTICIPANT)

    book.refuse("P2", refused=False)
    settlement = table.session.retry_settlement(Role.OPERATOR)

    assert settlement.reason == "last_player_standing"
    assert table.session.phase is Phase.SETTLED
    assert book.credits == {"P2": 20}


def test_pending_settlement_can_be_refunded_without_waiting() -> None:
    book = CreditBook()
    book.refuse("P2")
    table = _Table(gateway=book)
    table.seat(("P1", 10), ("P2", 10))
    with pytest.raises(SettlementFailed):
        table.session.apply_move("P1", MoveKind.FOLD)

    book.refuse("P2", refused=False)
    settlement = table.session.refund_equal_split("operator")

    assert settlement.reason == "refund_equal_split"
    assert book.credits == {"P1": 10, "P2": 10}


def test_retry_without_pending_settlement_is_rejected() -> None:
    table = _Table()
    table.seat(("P1", 10), ("P2", 10))
    with pytest.raises(InvalidPhase):
        table.session.retry_settlement(Role.OPERATOR)


# --------------------------------------------------------------------------- operator paths


def test_refund_requires_operator_and_an_idle_session() -> None:
    table = _Table(config=EngineConfig(liveness_window=60.0))
    table.seat(("P1", 10), ("P2", 10))

    with pytest.raises(NotAuthorized):
        table.session.refund_equal_split(Role.PARTICIPANT)
    with pytest.raises(NotAuthorized):
        table.session.refund_equal_split("root")

    table.clock.advance(30)
    with pytest.raises(InvalidPhase):
        table.session.refund_equal_split(Role.OPERATOR)

    table.session.apply_move("P1", MoveKind.CALL)
    table.clock.advance(59)
    with pytest.raises(InvalidPhase):
        table.session.refund_equal_split(Role.OPERATOR)

    table.clock.advance(1)
    table.session.refund_equal_split(Role.OPERATOR)
    assert table.session.phase is Phase.SETTLED


def test_confidential_state_is_owner_or_auditor_only() -> None:
    table = _Table()
    table.seat(("P1", 10), ("P2", 10))

    with pytest.raises(NotAuthorized):
        table.session.confidential_state("P1", "P2")
    with pytest.raises(NotAuthorized):
        table.session.authorize_auditor("auditor", Role.PARTICIPANT)
    with pytest.raises(NotInSession):
        table.session.confidential_state("P9", "P9")
    with pytest.raises(NotAuthorized):
        table.session.confidential_state("P9", "stranger")

    table.session.authorize_auditor("auditor", Role.OPERATOR)
    state = table.session.confidential_state("P1", "auditor")
    owner_view = table.session.confidential_state("P1", "P1")
    assert [table.cipher.decrypt(c, "auditor") for c in state.cards] == [
        table.cipher.decrypt(c, "P1") for c in owner_view.cards
    ]
    with pytest.raises(NotAuthorized):
        table.cipher.decrypt(owner_view.cards[0], "P2")


def test_info_carries_no_confidential_values() -> None:
    table = _Table()
    table.seat(("P1", 10), ("P2", 10))
    table.session.apply_move("P1", MoveKind.RAISE, table.amount(4), 0)
    info = table.session.info()
    flattened = repr(info)
    assert "ConfidentialValue" not in flattened


def test_reveal_cards_is_capped_at_hand_size() -> None:
    table = _Table(capacity=3)
    table.seat(("P1", 10))

    assert table.session.reveal_cards("P1", [5, 6, 7, 8]) == 2
    with pytest.raises(NotInSession):
        table.session.reveal_cards("P2", [1])
    state = table.session.confidential_state("P1", "P1")
    assert [table.cipher.decrypt(c, "P1") for c in state.cards] == [5, 6]


# --------------------------------------------------------------------------- concurrency


def test_reentrant_call_from_inside_an_operation_is_rejected() -> None:
    table: _Table

    class _NosyGateway(CreditBook):
        def transfer(self, recipient: str, amount: int) -> None:
            table.session.info()

    table = _Table(gateway=_NosyGateway())
    table.seat(("P1", 10), ("P2", 10))

    with pytest.raises(SettlementFailed) as excinfo:
        table.session.apply_move("P1", MoveKind.FOLD)

    assert isinstance(excinfo.value.__cause__, ReentrantCall)
    assert table.session.pot_total == 20
    assert table.session.settlement_pending


def test_strict_conservation_flag_checks_every_mutation() -> None:
    with feature_flags.override(enable={feature_flags.STRICT_CONSERVATION}):
        table = _Table(capacity=3)
        table.seat(("P1", 10), ("P2", 12), ("P3", 10))
        table.session.apply_move("P1", MoveKind.RAISE, table.amount(3), 3)
        table.session.apply_move("P2", MoveKind.FOLD)
        table.session.apply_move("P3", MoveKind.FOLD)
    assert table.book.credits == {"P1": 35}
