"""Opaque confidential values and the cipher capability the engine calls into.

The engine never sees plaintext for cards, bet amounts or the canonical fold
record.  It holds :class:`ConfidentialValue` handles and asks a
:class:`CipherCapability` to combine or compare them.  Branching is only ever
done on plaintext fields (roster, shadow fold flags, public stake), never by
decrypting a value mid-operation.

:class:`VaultCipher` is the in-process capability: plaintexts live inside the
vault, keyed by random handles, and only principals holding a reveal grant
can read them back.  A deployment backed by a real homomorphic scheme plugs
in another implementation of the protocol.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from . import feature_flags
from .errors import NotAuthorized, UnsupportedOperation

__all__ = [
    "CipherCapability",
    "ConfidentialValue",
    "SUPPORTED_OPS",
    "ValueKind",
    "VaultCipher",
]

logger = logging.getLogger(__name__)

SUPPORTED_OPS = frozenset({"add"})


class ValueKind(str, Enum):
    SCALAR = "scalar"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class ConfidentialValue:
    """Handle to an encrypted scalar or boolean.

    ``scope`` names the session that owns the value; reveal grants are only
    issued within that scope.
    """

    handle: str
    kind: ValueKind
    scope: str

    def __repr__(self) -> str:
        return f"ConfidentialValue({self.kind.value}, scope={self.scope}, handle=…{self.handle[-6:]})"


@runtime_checkable
class CipherCapability(Protocol):
    def encrypt(self, plaintext: int | bool, *, scope: str) -> ConfidentialValue: ...

    def combine(self, a: ConfidentialValue, b: ConfidentialValue, op: str = "add") -> ConfidentialValue: ...

    def equals(self, a: ConfidentialValue, b: ConfidentialValue) -> ConfidentialValue: ...

    def authorize_reveal(self, value: ConfidentialValue, principal: str, *, scope: str) -> None: ...

    def decrypt(self, value: ConfidentialValue, principal: str) -> int | bool: ...

    def resolve(self, handle: str) -> ConfidentialValue: ...


class VaultCipher:
    """Thread-safe in-process implementation of :class:`CipherCapability`."""

    def __init__(self) -> None:
        self._plain: dict[str, int | bool] = {}
        self._values: dict[str, ConfidentialValue] = {}
        self._grants: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def encrypt(self, plaintext: int | bool, *, scope: str) -> ConfidentialValue:
        if isinstance(plaintext, bool):
            kind = ValueKind.BOOLEAN
        elif isinstance(plaintext, int):
            kind = ValueKind.SCALAR
        else:
            raise UnsupportedOperation(f"cannot encrypt {type(plaintext).__name__}")
        return self._seal(plaintext, kind, scope)

    def combine(self, a: ConfidentialValue, b: ConfidentialValue, op: str = "add") -> ConfidentialValue:
        if op not in SUPPORTED_OPS:
            raise UnsupportedOperation(f"operation '{op}' is not supported by this cipher")
        if a.kind is not ValueKind.SCALAR or b.kind is not ValueKind.SCALAR:
            raise UnsupportedOperation("only scalar values can be added")
        self._require_same_scope(a, b)
        with self._lock:
            total = int(self._known(a)) + int(self._known(b))
        return self._seal(total, ValueKind.SCALAR, a.scope)

    def equals(self, a: ConfidentialValue, b: ConfidentialValue) -> ConfidentialValue:
        self._require_same_scope(a, b)
        with self._lock:
            same = self._known(a) == self._known(b)
        return self._seal(bool(same), ValueKind.BOOLEAN, a.scope)

    def authorize_reveal(self, value: ConfidentialValue, principal: str, *, scope: str) -> None:
        if value.scope != scope:
            logger.warning(
                "reveal grant outside owning scope rejected",
                extra={"value_scope": value.scope, "scope": scope, "principal": principal},
            )
            raise NotAuthorized(f"value is not owned by session {scope}")
        with self._lock:
            if value.handle not in self._plain:
                raise NotAuthorized("unknown confidential value")
            self._grants.setdefault(value.handle, set()).add(principal)
        if feature_flags.is_enabled(feature_flags.AUDIT_REVEALS):
            logger.info("reveal granted", extra={"scope": scope, "principal": principal, "kind": value.kind.value})

    def decrypt(self, value: ConfidentialValue, principal: str) -> int | bool:
        with self._lock:
            if principal not in self._grants.get(value.handle, ()):
                raise NotAuthorized(f"'{principal}' holds no reveal grant for this value")
            return self._plain[value.handle]

    def resolve(self, handle: str) -> ConfidentialValue:
        with self._lock:
            value = self._values.get(handle)
        if value is None:
            raise NotAuthorized("unknown confidential handle")
        return value

    def _seal(self, plaintext: int | bool, kind: ValueKind, scope: str) -> ConfidentialValue:
        handle = secrets.token_hex(16)
        value = ConfidentialValue(handle=handle, kind=kind, scope=scope)
        with self._lock:
            self._plain[handle] = plaintext
            self._values[handle] = value
        return value

    def _known(self, value: ConfidentialValue) -> int | bool:
        # Caller holds the lock.
        if self._values.get(value.handle) != value:
            raise NotAuthorized("confidential value was not issued by this cipher")
        return self._plain[value.handle]

    @staticmethod
    def _require_same_scope(a: ConfidentialValue, b: ConfidentialValue) -> None:
        if a.scope != b.scope:
            raise NotAuthorized("confidential values from different sessions cannot be combined")
