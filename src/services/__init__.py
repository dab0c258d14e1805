# src/services/__init__.py
"""
Сервисы приложения.

- ingestion: приём телеметрии трекеров из брокера и передача в конвейер
- realtime_ws: FastAPI-приложение, WebSocket для зрителей, /health и /stats
"""

__all__: list[str] = []
