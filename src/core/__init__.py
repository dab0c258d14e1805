# src/core/__init__.py
"""
Доменный слой (Core Domain).
Бизнес-логика трекинга, инфраструктура передаётся через конструкторы.
"""

from src.core.tracking import TrackingService

__all__ = ["TrackingService"]
