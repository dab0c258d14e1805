# src/shared/__init__.py
"""
Общий код сервисов.

Модули:
- models: общие Pydantic-модели ответов
"""

__all__: list[str] = []
