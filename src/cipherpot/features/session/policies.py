"""Round-limit fallback winner selection.

When a session reaches its configured round limit without a sole survivor,
the engine needs *some* winner set.  Real hand evaluation is out of scope, so
the rule is a named, pluggable policy.  A policy receives the roster and the
participants still in the hand (both in seat order) and returns the winners.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

from ...core.errors import InvalidConfiguration

__all__ = ["WinnerPolicy", "available_policies", "get_policy", "register_policy", "split_shares"]

WinnerPolicy = Callable[[Sequence[str], Sequence[str]], list[str]]


def first_active(roster: Sequence[str], active: Sequence[str]) -> list[str]:
    """First seat still in the hand takes the pot."""

    pool = active or roster
    return [pool[0]] if pool else []


def split_active(roster: Sequence[str], active: Sequence[str]) -> list[str]:
    """Everyone still in the hand shares the pot."""

    return list(active or roster)


_POLICIES: dict[str, WinnerPolicy] = {
    "first_active": first_active,
    "split_active": split_active,
}


def available_policies() -> tuple[str, ...]:
    return tuple(sorted(_POLICIES))


def register_policy(name: str, policy: WinnerPolicy) -> None:
    key = name.strip().lower()
    if not key:
        raise InvalidConfiguration("policy name cannot be empty")
    _POLICIES[key] = policy


def get_policy(name: str) -> WinnerPolicy:
    key = (name or "").strip().lower()
    try:
        return _POLICIES[key]
    except KeyError as exc:
        raise InvalidConfiguration(
            f"unknown fallback policy '{name}'; expected one of {', '.join(available_policies())}"
        ) from exc


def split_shares(total: int, winners: Sequence[str]) -> list[tuple[str, int]]:
    """Split ``total`` equally; leftover units go one each to winners in seat order."""

    if not winners:
        raise InvalidConfiguration("cannot split a pot between zero winners")
    base, leftover = divmod(total, len(winners))
    return [(who, base + (1 if idx < leftover else 0)) for idx, who in enumerate(winners)]
