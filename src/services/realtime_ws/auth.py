# src/services/realtime_ws/auth.py
"""
Авторизация подписок зрителей.

Политика — предикат над токеном, предъявленным при подключении.
Режим выбирается настройкой WS_AUTH_MODE:
    permissive          — без токена можно (не для продакшена)
    require_credential  — без токена нельзя
Предъявленный токен в обоих режимах должен быть действительным.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping

AuthPolicy = Callable[[str | None], bool]

AUTH_MODE_PERMISSIVE = "permissive"
AUTH_MODE_STRICT = "require_credential"


def _token_checker(accepted_tokens: Iterable[str]) -> Callable[[str], bool]:
    tokens = frozenset(t for t in accepted_tokens if t)

    def is_valid(token: str) -> bool:
        if not token.strip():
            return False
        # При пустом списке принимается любой непустой токен
        return not tokens or token in tokens

    return is_valid


def permissive_policy(accepted_tokens: Iterable[str] = ()) -> AuthPolicy:
    is_valid = _token_checker(accepted_tokens)

    def policy(credential: str | None) -> bool:
        if credential is None:
            return True
        return is_valid(credential)

    policy.mode = AUTH_MODE_PERMISSIVE  # type: ignore[attr-defined]
    return policy


def strict_policy(accepted_tokens: Iterable[str] = ()) -> AuthPolicy:
    is_valid = _token_checker(accepted_tokens)

    def policy(credential: str | None) -> bool:
        if credential is None:
            return False
        return is_valid(credential)

    policy.mode = AUTH_MODE_STRICT  # type: ignore[attr-defined]
    return policy


def build_auth_policy(ws_settings: Any) -> AuthPolicy:
    """Политика по секции websocket конфига."""
    if ws_settings.WS_AUTH_MODE == AUTH_MODE_STRICT:
        return strict_policy(ws_settings.WS_AUTH_TOKENS)
    return permissive_policy(ws_settings.WS_AUTH_TOKENS)


def extract_credential(query_params: Mapping[str, str], headers: Mapping[str, str]) -> str | None:
    """
    Токен из ?token=..., иначе из заголовка Authorization (Bearer или как есть).
    """
    token = query_params.get("token")
    if token:
        return token

    auth_header = headers.get("authorization")
    if auth_header:
        if auth_header.startswith("Bearer "):
            return auth_header[len("Bearer "):] or None
        return auth_header

    return None
