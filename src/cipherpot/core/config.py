"""Engine configuration.

``EngineConfig`` is a frozen dataclass so a registry and every session it
creates share one immutable view.  ``EngineConfig.from_env`` reads the
``CIPHERPOT_*`` variables used by the web runner and the CLI.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from typing import Any, Final

from .errors import InvalidConfiguration

__all__ = ["DECK_SIZE", "EngineConfig"]

DECK_SIZE: Final = 52
_ENV_PREFIX: Final = "CIPHERPOT_"


@dataclass(frozen=True)
class EngineConfig:
    """Process-wide knobs shared by every session of a registry."""

    max_capacity: int = 8
    hand_size: int = 2
    # Completed betting rounds before the fallback winner policy settles; None disables it.
    round_limit: int | None = None
    liveness_window: float = 600.0
    fallback_account: str = "operator"
    fallback_policy: str = "first_active"
    operator_token: str | None = field(default=None, repr=False)
    deck_seed: int | None = None

    def __post_init__(self) -> None:
        if self.max_capacity < 2:
            raise InvalidConfiguration(f"max_capacity must be at least 2, got {self.max_capacity}")
        if self.hand_size < 1:
            raise InvalidConfiguration(f"hand_size must be positive, got {self.hand_size}")
        if self.max_capacity * self.hand_size > DECK_SIZE:
            raise InvalidConfiguration(
                f"{self.max_capacity} seats x {self.hand_size} cards exceeds a {DECK_SIZE}-card deck"
            )
        if self.round_limit is not None and self.round_limit < 1:
            raise InvalidConfiguration(f"round_limit must be positive when set, got {self.round_limit}")
        if self.liveness_window < 0:
            raise InvalidConfiguration("liveness_window cannot be negative")
        if not self.fallback_account.strip():
            raise InvalidConfiguration("fallback_account cannot be empty")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Build a config from ``CIPHERPOT_<FIELD>`` variables; unset fields keep defaults."""

        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for entry in fields(cls):
            raw = env.get(_ENV_PREFIX + entry.name.upper())
            if raw is None or raw.strip() == "":
                continue
            values[entry.name] = _coerce(entry.name, raw.strip())
        return cls(**values)


_INT_FIELDS: Final = frozenset({"max_capacity", "hand_size", "round_limit", "deck_seed"})
_FLOAT_FIELDS: Final = frozenset({"liveness_window"})


def _coerce(name: str, raw: str) -> Any:
    try:
        if name in _INT_FIELDS:
            return int(raw)
        if name in _FLOAT_FIELDS:
            return float(raw)
    except ValueError as exc:
        raise InvalidConfiguration(f"{_ENV_PREFIX}{name.upper()}={raw!r} is not a number") from exc
    return raw
