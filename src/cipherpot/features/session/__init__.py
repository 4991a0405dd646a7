"""Session feature: state machine, registry, schemas, and API router."""

from .engine import Session
from .player import PlayerState
from .router import create_session_routers
from .schemas import (
    AccountPayload,
    ConfidentialHandlePayload,
    ConfidentialStatePayload,
    MovePayload,
    SessionInfoPayload,
    SettlementPayload,
    StatsPayload,
)
from .service import RegistryStats, SessionRegistry

__all__ = [
    "AccountPayload",
    "ConfidentialHandlePayload",
    "ConfidentialStatePayload",
    "MovePayload",
    "PlayerState",
    "RegistryStats",
    "Session",
    "SessionInfoPayload",
    "SessionRegistry",
    "SettlementPayload",
    "StatsPayload",
    "create_session_routers",
]
