"""Fund custody for pooled session stake.

The ledger is the only component that moves value.  Each session gets one
account whose ``balance`` mirrors the session's pot.  Disbursal is
all-or-nothing: either every recipient is paid and the balance drops to zero,
or every completed transfer is reclaimed, the balance is left as it was and
:class:`SettlementFailed` is raised.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from .errors import (
    InsufficientStake,
    InvalidConfiguration,
    InvalidMove,
    SessionNotFound,
    SettlementFailed,
    TransferRejected,
)
from .models import Payout

__all__ = ["AccountSnapshot", "CreditBook", "Ledger", "TransferGateway"]

logger = logging.getLogger(__name__)


class TransferGateway(Protocol):
    """Moves value out of custody to a recipient."""

    def transfer(self, recipient: str, amount: int) -> None: ...

    def reclaim(self, recipient: str, amount: int) -> None: ...


class CreditBook:
    """In-memory gateway crediting recipients' balances.

    ``refuse`` marks a recipient unable to receive value, which makes every
    transfer to it raise :class:`TransferRejected`.
    """

    def __init__(self) -> None:
        self.credits: dict[str, int] = {}
        self._refused: set[str] = set()
        self._lock = threading.Lock()

    def refuse(self, recipient: str, refused: bool = True) -> None:
        with self._lock:
            if refused:
                self._refused.add(recipient)
            else:
                self._refused.discard(recipient)

    def transfer(self, recipient: str, amount: int) -> None:
        with self._lock:
            if recipient in self._refused:
                raise TransferRejected(f"recipient '{recipient}' cannot receive value")
            self.credits[recipient] = self.credits.get(recipient, 0) + amount

    def reclaim(self, recipient: str, amount: int) -> None:
        with self._lock:
            self.credits[recipient] = self.credits.get(recipient, 0) - amount

    def balance_of(self, recipient: str) -> int:
        with self._lock:
            return self.credits.get(recipient, 0)


@dataclass
class _Account:
    session_id: int
    min_stake: int
    balance: int = 0
    deposited_total: int = 0
    paid_out_total: int = 0
    payouts: list[Payout] = field(default_factory=list)
    # Transfers a failed settlement could not take back; needs operator reconciliation.
    unreclaimed: list[Payout] = field(default_factory=list)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def check(self) -> None:
        if self.deposited_total - self.paid_out_total != self.balance or self.balance < 0:
            raise AssertionError(
                f"ledger account {self.session_id} out of balance: deposited={self.deposited_total} "
                f"paid_out={self.paid_out_total} balance={self.balance}"
            )


@dataclass(frozen=True)
class AccountSnapshot:
    session_id: int
    min_stake: int
    balance: int
    deposited_total: int
    paid_out_total: int
    payouts: tuple[Payout, ...]
    unreclaimed: tuple[Payout, ...] = ()


class Ledger:
    def __init__(self, gateway: TransferGateway | None = None) -> None:
        self.gateway: TransferGateway = gateway if gateway is not None else CreditBook()
        self._accounts: dict[int, _Account] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ accounts
    def open_account(self, session_id: int, min_stake: int) -> None:
        if min_stake <= 0:
            raise InvalidConfiguration(f"min_stake must be positive, got {min_stake}")
        with self._lock:
            if session_id in self._accounts:
                raise InvalidConfiguration(f"ledger account for session {session_id} already open")
            self._accounts[session_id] = _Account(session_id=session_id, min_stake=min_stake)

    def balance(self, session_id: int) -> int:
        account = self._account(session_id)
        with account.lock:
            return account.balance

    def account(self, session_id: int) -> AccountSnapshot:
        account = self._account(session_id)
        with account.lock:
            return AccountSnapshot(
                session_id=account.session_id,
                min_stake=account.min_stake,
                balance=account.balance,
                deposited_total=account.deposited_total,
                paid_out_total=account.paid_out_total,
                payouts=tuple(account.payouts),
                unreclaimed=tuple(account.unreclaimed),
            )

    # ------------------------------------------------------------------ deposits
    def deposit(self, session_id: int, participant: str, amount: int, *, is_raise: bool = False) -> int:
        """Accept stake into custody and return the new balance."""

        account = self._account(session_id)
        if is_raise:
            if amount <= 0:
                raise InvalidMove(f"raise deposit must be positive, got {amount}")
        elif amount < account.min_stake:
            raise InsufficientStake(f"stake {amount} is below the minimum of {account.min_stake}")
        with account.lock:
            account.balance += amount
            account.deposited_total += amount
            account.check()
            balance = account.balance
        logger.debug(
            "deposit accepted",
            extra={"session_id": session_id, "participant": participant, "amount": amount, "raise": is_raise},
        )
        return balance

    # ------------------------------------------------------------------ payouts
    def disburse(self, session_id: int, recipients: Sequence[tuple[str, int]]) -> tuple[Payout, ...]:
        """Pay every share or nothing; shares must sum exactly to the balance."""

        return self._pay(session_id, [Payout(who, share, "win") for who, share in recipients])

    def refund_equal_split(
        self,
        session_id: int,
        roster: Sequence[str],
        *,
        fallback_account: str,
    ) -> tuple[Payout, ...]:
        """Return the balance in equal integer shares; the remainder goes to ``fallback_account``."""

        account = self._account(session_id)
        with account.lock:
            balance = account.balance
        plan: list[Payout] = []
        if roster:
            share = balance // len(roster)
            plan.extend(Payout(who, share, "refund") for who in roster)
            remainder = balance - share * len(roster)
        else:
            remainder = balance
        if remainder:
            plan.append(Payout(fallback_account, remainder, "remainder"))
        return self._pay(session_id, plan)

    def _pay(self, session_id: int, plan: list[Payout]) -> tuple[Payout, ...]:
        account = self._account(session_id)
        with account.lock:
            before = account.balance
            if any(p.amount < 0 for p in plan):
                raise SettlementFailed("payout shares cannot be negative")
            total = sum(p.amount for p in plan)
            if total != before:
                raise SettlementFailed(f"payout shares sum to {total} but the balance is {before}")

            completed: list[Payout] = []
            for payout in plan:
                if payout.amount == 0:
                    continue
                try:
                    self.gateway.transfer(payout.recipient, payout.amount)
                except Exception as exc:
                    stranded = self._unwind(session_id, completed)
                    account.unreclaimed.extend(stranded)
                    logger.warning(
                        "settlement failed, transfers reclaimed",
                        extra={
                            "session_id": session_id,
                            "recipient": payout.recipient,
                            "reclaimed": len(completed) - len(stranded),
                            "stranded": len(stranded),
                            "balance": before,
                        },
                    )
                    detail = f"; {len(stranded)} reclaim(s) also failed" if stranded else ""
                    raise SettlementFailed(f"transfer to '{payout.recipient}' failed: {exc}{detail}") from exc
                completed.append(payout)

            account.balance = 0
            account.paid_out_total += total
            account.payouts.extend(plan)
            account.check()
        logger.info(
            "settlement disbursed",
            extra={"session_id": session_id, "total": total, "recipients": len(plan)},
        )
        return tuple(plan)

    def _unwind(self, session_id: int, completed: list[Payout]) -> list[Payout]:
        """Reclaim completed transfers newest first; returns the ones the gateway would not give back."""

        stranded: list[Payout] = []
        for payout in reversed(completed):
            try:
                self.gateway.reclaim(payout.recipient, payout.amount)
            except Exception:
                logger.exception(
                    "reclaim failed; transfer left with recipient",
                    extra={"session_id": session_id, "recipient": payout.recipient, "amount": payout.amount},
                )
                stranded.append(payout)
        logger.debug(
            "transfers reclaimed",
            extra={"session_id": session_id, "count": len(completed) - len(stranded)},
        )
        return stranded

    def _account(self, session_id: int) -> _Account:
        with self._lock:
            account = self._accounts.get(session_id)
        if account is None:
            raise SessionNotFound(f"no ledger account for session {session_id}")
        return account
