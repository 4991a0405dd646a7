#!/usr/bin/env python3
"""Hammer a registry from many threads and verify the custody invariants.

Usage:
    python scripts/check_conservation.py --sessions 40 --workers 8
"""

from __future__ import annotations

import argparse
import random
import statistics
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from cipherpot.core import feature_flags
from cipherpot.core.config import EngineConfig
from cipherpot.core.errors import CipherpotError
from cipherpot.core.models import MoveKind, Phase
from cipherpot.features.session import SessionRegistry


@dataclass(frozen=True)
class RunResult:
    session_id: int
    deposited: int
    paid_out: int
    rejected: int
    seconds: float


def play(registry: SessionRegistry, seed: int, capacity: int, min_stake: int) -> RunResult:
    rng = random.Random(seed)
    start = time.perf_counter()
    sid = registry.create_session("texas_holdem", capacity, min_stake)
    roster = [f"s{seed}-p{seat}" for seat in range(capacity)]
    for who in roster:
        registry.join(sid, who, min_stake + rng.randrange(0, 5))

    rejected = 0
    while registry.session_info(sid).phase is Phase.ACTIVE:
        who = rng.choice(roster)
        kind = rng.choice((MoveKind.CALL, MoveKind.RAISE, MoveKind.FOLD))
        try:
            if kind is MoveKind.RAISE:
                plain = rng.randrange(0, 4)
                amount = registry.encrypt_amount(sid, who, plain)
                registry.apply_move(sid, who, kind, amount, plain)
            else:
                registry.apply_move(sid, who, kind)
        except CipherpotError:
            rejected += 1

    account = registry.ledger.account(sid)
    if account.balance != 0 or account.deposited_total != account.paid_out_total:
        raise AssertionError(f"session {sid} leaked value: {account}")
    return RunResult(sid, account.deposited_total, account.paid_out_total, rejected, time.perf_counter() - start)


def main() -> None:
    parser = argparse.ArgumentParser(description="Concurrent conservation check.")
    parser.add_argument("--sessions", type=int, default=40)
    parser.add_argument("--workers", type=int, default=8)
    parser.add_argument("--capacity", type=int, default=4)
    parser.add_argument("--min-stake", type=int, default=10)
    parser.add_argument("--round-limit", type=int, default=3)
    args = parser.parse_args()

    registry = SessionRegistry(EngineConfig(round_limit=args.round_limit, deck_seed=7))
    with feature_flags.override(enable={feature_flags.STRICT_CONSERVATION}):
        with ThreadPoolExecutor(max_workers=args.workers) as pool:
            results = list(
                pool.map(lambda seed: play(registry, seed, args.capacity, args.min_stake), range(args.sessions))
            )

    credited = sum(registry.ledger.gateway.credits.values())
    deposited = sum(r.deposited for r in results)
    if credited != deposited:
        raise AssertionError(f"gateway credited {credited} but {deposited} was deposited")
    print(f"sessions: {len(results)}  deposited: {deposited}  credited: {credited}")
    print(f"rejected moves: {sum(r.rejected for r in results)}")
    print(f"mean session time: {statistics.fmean(r.seconds for r in results) * 1000:.2f} ms")


if __name__ == "__main__":
    main()
