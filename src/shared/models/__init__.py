# src/shared/models/__init__.py
"""
Общие Pydantic-модели.
"""

from src.shared.models.common import HealthStatus

__all__ = ["HealthStatus"]
