"""Environment-driven feature flags for optional engine behaviour.

Flags are read from ``CIPHERPOT_FEATURES`` (comma-separated, case-insensitive)
and can be forced on or off for a block of code with :func:`override`, which
is how the tests exercise them.

Usage::

    from cipherpot.core import feature_flags

    if feature_flags.is_enabled(feature_flags.AUDIT_REVEALS):
        ...

Known flags:

``cipher.audit_reveals``
    Log every reveal grant issued by the vault at INFO level.
``session.strict_conservation``
    Re-check the full conservation invariant (ledger balance against the sum
    of every player's plaintext stake) after every mutation instead of only
    before settlement.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Final

logger = logging.getLogger(__name__)

ENV_VAR: Final = "CIPHERPOT_FEATURES"

AUDIT_REVEALS: Final = "cipher.audit_reveals"
STRICT_CONSERVATION: Final = "session.strict_conservation"

KNOWN_FLAGS: Final = frozenset({AUDIT_REVEALS, STRICT_CONSERVATION})

# Each entry is (forced_on, forced_off); later entries win.
_OVERRIDES: list[tuple[frozenset[str], frozenset[str]]] = []


def _key(flag: str) -> str:
    return flag.strip().lower()


def _from_env() -> set[str]:
    raw = os.getenv(ENV_VAR) or ""
    return {_key(part) for part in raw.split(",") if part.strip()}


def active_flags() -> frozenset[str]:
    """Return every flag currently switched on, overrides applied."""

    flags = _from_env()
    for forced_on, forced_off in _OVERRIDES:
        flags |= forced_on
        flags -= forced_off
    return frozenset(flags)


def is_enabled(flag: str) -> bool:
    key = _key(flag)
    if key not in KNOWN_FLAGS:
        logger.debug("unknown feature flag queried", extra={"flag": key})
    return key in active_flags()


@contextmanager
def override(*, enable: Iterable[str] = (), disable: Iterable[str] = ()) -> Iterator[None]:
    """Force flags on/off inside the block; nested blocks stack."""

    entry = (frozenset(_key(f) for f in enable), frozenset(_key(f) for f in disable))
    _OVERRIDES.append(entry)
    try:
        yield
    finally:
        _OVERRIDES.remove(entry)


def set_env_flags(flags: Iterable[str]) -> None:
    """Replace the env flag list; used by scripts and tests."""

    os.environ[ENV_VAR] = ",".join(sorted({_key(flag) for flag in flags}))
