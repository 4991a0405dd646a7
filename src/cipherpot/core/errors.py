"""Error hierarchy shared by the engine, the ledger and the HTTP surface.

Every error carries a stable ``code`` so transports can map failures without
matching on class names.  Participant-level precondition failures are never
retried by the engine; ``SettlementFailed`` always leaves the ledger balance
untouched and needs an operator to retry.
"""

from __future__ import annotations

__all__ = [
    "AlreadyFolded",
    "AlreadyJoined",
    "CipherpotError",
    "InsufficientStake",
    "InvalidConfiguration",
    "InvalidMove",
    "InvalidPhase",
    "NotAuthorized",
    "NotInSession",
    "ReentrantCall",
    "SessionClosed",
    "SessionFull",
    "SessionNotFound",
    "SettlementFailed",
    "TransferRejected",
    "UnsupportedOperation",
]


class CipherpotError(Exception):
    """Base class for every error raised by the engine."""

    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidConfiguration(CipherpotError):
    code = "invalid_configuration"


class InvalidPhase(CipherpotError):
    code = "invalid_phase"


class SessionClosed(InvalidPhase):
    code = "session_closed"


class SessionFull(CipherpotError):
    code = "session_full"


class AlreadyJoined(CipherpotError):
    code = "already_joined"


class NotInSession(CipherpotError):
    code = "not_in_session"


class AlreadyFolded(CipherpotError):
    code = "already_folded"


class InsufficientStake(CipherpotError):
    code = "insufficient_stake"


class InvalidMove(CipherpotError):
    code = "invalid_move"


class NotAuthorized(CipherpotError):
    code = "not_authorized"


class UnsupportedOperation(CipherpotError):
    code = "unsupported_operation"


class SettlementFailed(CipherpotError):
    code = "settlement_failed"


class ReentrantCall(CipherpotError):
    code = "reentrant_call"


class SessionNotFound(CipherpotError, KeyError):
    code = "session_not_found"

    def __str__(self) -> str:
        return self.message


class TransferRejected(CipherpotError):
    """Raised by a transfer gateway when a recipient cannot receive value."""

    code = "transfer_rejected"
