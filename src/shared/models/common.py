# src/shared/models/common.py
"""
Общие модели ответов сервиса.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded, unhealthy
    version: str | None = None
    uptime_seconds: float | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)
    # dependencies: {"postgres": "healthy", "redis": "healthy", "transport": "healthy"}
