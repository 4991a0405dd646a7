from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from ...core.confidential import CipherCapability, ConfidentialValue
from ...core.errors import InvalidMove, InvalidPhase, SessionClosed
from ...core.models import ConfidentialState, Phase

__all__ = ["PlayerState"]


@dataclass
class PlayerState:
    """One participant's play data inside a session.

    ``folded`` is the public shadow of ``confidential_folded``: once a player
    declares a fold the fact is no longer secret, so control flow may branch
    on it.  Cards and contribution amounts stay confidential.
    ``plain_total_stake`` is bookkeeping for payouts and refunds only.
    """

    identity: str
    confidential_cards: list[ConfidentialValue]
    confidential_folded: ConfidentialValue
    confidential_contribution: ConfidentialValue
    plain_total_stake: int = 0
    last_action_at: float = 0.0
    folded: bool = False
    sealed: bool = field(default=False, repr=False)

    @classmethod
    def fresh(
        cls,
        identity: str,
        cipher: CipherCapability,
        *,
        scope: str,
        hand_size: int,
        now: float,
    ) -> PlayerState:
        state = cls(
            identity=identity,
            confidential_cards=[cipher.encrypt(0, scope=scope) for _ in range(hand_size)],
            confidential_folded=cipher.encrypt(False, scope=scope),
            confidential_contribution=cipher.encrypt(0, scope=scope),
            last_action_at=now,
        )
        for value in state.owned_values():
            cipher.authorize_reveal(value, identity, scope=scope)
        return state

    # ------------------------------------------------------------------ mutators
    def apply_fold(self, cipher: CipherCapability, *, scope: str) -> None:
        """Mark the player folded; folding again is a no-op."""

        self._require_open()
        if self.folded:
            return
        self.confidential_folded = cipher.encrypt(True, scope=scope)
        cipher.authorize_reveal(self.confidential_folded, self.identity, scope=scope)
        self.folded = True

    def apply_contribution(
        self,
        cipher: CipherCapability,
        phase: Phase,
        confidential_amount: ConfidentialValue,
        plain_amount: int = 0,
    ) -> None:
        staged = self.stage_contribution(cipher, phase, confidential_amount)
        self.commit_contribution(cipher, staged, plain_amount)

    def stage_contribution(
        self,
        cipher: CipherCapability,
        phase: Phase,
        confidential_amount: ConfidentialValue,
    ) -> ConfidentialValue:
        """Return the combined contribution without touching this player."""

        self._require_open()
        if phase is not Phase.ACTIVE:
            raise InvalidPhase(f"contributions are only accepted while active, session is {phase.value}")
        return cipher.combine(self.confidential_contribution, confidential_amount, "add")

    def commit_contribution(self, cipher: CipherCapability, staged: ConfidentialValue, plain_amount: int = 0) -> None:
        self._require_open()
        if plain_amount < 0:
            raise InvalidMove("plain amount cannot be negative")
        cipher.authorize_reveal(staged, self.identity, scope=staged.scope)
        self.confidential_contribution = staged
        self.plain_total_stake += plain_amount

    def credit_stake(self, amount: int) -> None:
        self._require_open()
        self.plain_total_stake += amount

    def record_activity(self, now: float) -> None:
        self._require_open()
        self.last_action_at = now

    def replace_cards(self, cipher: CipherCapability, values: Sequence[int], *, scope: str) -> int:
        """Re-encrypt ``values`` into the card slots; extra values are ignored.

        Returns how many slots were written.
        """

        self._require_open()
        written = 0
        for slot, plain in enumerate(values[: len(self.confidential_cards)]):
            card = cipher.encrypt(int(plain), scope=scope)
            cipher.authorize_reveal(card, self.identity, scope=scope)
            self.confidential_cards[slot] = card
            written += 1
        return written

    def reset_round(self, cipher: CipherCapability, *, scope: str) -> None:
        self._require_open()
        self.confidential_contribution = cipher.encrypt(0, scope=scope)
        cipher.authorize_reveal(self.confidential_contribution, self.identity, scope=scope)

    def seal(self) -> None:
        self.sealed = True

    # ------------------------------------------------------------------ views
    def owned_values(self) -> list[ConfidentialValue]:
        return [*self.confidential_cards, self.confidential_folded, self.confidential_contribution]

    def snapshot(self) -> ConfidentialState:
        return ConfidentialState(
            participant=self.identity,
            cards=tuple(self.confidential_cards),
            folded=self.confidential_folded,
            contribution=self.confidential_contribution,
            plain_total_stake=self.plain_total_stake,
            last_action_at=self.last_action_at,
        )

    def _require_open(self) -> None:
        if self.sealed:
            raise SessionClosed(f"player state for '{self.identity}' is sealed")
