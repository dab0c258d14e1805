# src/services/realtime_ws/__init__.py
"""
WebSocket шлюз зрителей: комнаты гонок и live-рассылка позиций.
"""

from src.services.realtime_ws.auth import (
    AuthPolicy,
    build_auth_policy,
    extract_credential,
    permissive_policy,
    strict_policy,
)
from src.services.realtime_ws.connection_manager import ConnectionManager, SubscribedClient

__all__ = [
    "AuthPolicy",
    "build_auth_policy",
    "extract_credential",
    "permissive_policy",
    "strict_policy",
    "ConnectionManager",
    "SubscribedClient",
]
