# src/infra/database.py
"""
Пул соединений PostgreSQL для хранилища позиций.
Повтор при обрыве соединения, транзакции, применение схемы при старте.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import wraps
from typing import Any, AsyncGenerator, Callable, TypeVar

import asyncpg
from asyncpg import Connection, Pool, Record

from src.common.logger import log_error, log_info, log_warning

T = TypeVar("T")

# Ошибки, при которых имеет смысл повторить запрос
_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionRefusedError,
    OSError,
)

# Идентификатор advisory-лока для миграций
SCHEMA_LOCK_ID = 7321001


def retry_on_connection_error(
    max_attempts: int = 3,
    delay: float = 1.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Повторяет корутину при ошибках подключения к PostgreSQL.

    Задержка растёт линейно: delay * номер попытки.
    Ошибки запроса (синтаксис, ограничения) не повторяются.

    Вызов с retry=False выполняется ровно один раз: так вызываются
    записи, которые сервер мог уже применить до обрыва или таймаута ответа.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(*args: Any, retry: bool = True, **kwargs: Any) -> T:
            if not retry:
                return await func(*args, **kwargs)

            last_error: BaseException | None = None

            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except _CONNECTION_ERRORS as e:
                    last_error = e
                    if attempt >= max_attempts:
                        break
                    await log_warning(
                        f"PostgreSQL недоступен, попытка {attempt}/{max_attempts}: {e}",
                        extra={"operation": func.__name__},
                    )
                    await asyncio.sleep(delay * attempt)

            await log_error(
                f"PostgreSQL недоступен после {max_attempts} попыток: {last_error}",
                extra={"operation": func.__name__},
            )
            raise last_error  # type: ignore[misc]

        return wrapper  # type: ignore[return-value]

    return decorator


class DatabaseManager:
    """
    Синглтон над пулом asyncpg.
    """

    _instance: DatabaseManager | None = None
    _pool: Pool | None = None

    def __new__(cls) -> DatabaseManager:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if hasattr(self, "_initialized"):
            return
        self._initialized = True
        self._pool = None

    @property
    def pool(self) -> Pool:
        if self._pool is None:
            raise RuntimeError("Пул PostgreSQL не создан, сначала вызовите connect()")
        return self._pool

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @retry_on_connection_error(max_attempts=3, delay=1.0)
    async def connect(
        self,
        dsn: str | None = None,
        min_size: int = 5,
        max_size: int = 20,
        command_timeout: int = 60,
    ) -> None:
        """
        Создаёт пул соединений. Повторный вызов ничего не делает.

        Args:
            dsn: Строка подключения; если не передана, берётся из конфига
            min_size: Минимальный размер пула
            max_size: Максимальный размер пула
            command_timeout: Таймаут одной команды (секунды)
        """
        if self._pool is not None:
            return

        if dsn is None:
            from src.config import settings
            dsn = settings.database.dsn
            min_size = settings.database.DB_MIN_POOL_SIZE
            max_size = settings.database.DB_MAX_POOL_SIZE
            command_timeout = settings.database.DB_COMMAND_TIMEOUT

        self._pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=min_size,
            max_size=max_size,
            command_timeout=command_timeout,
        )

    async def disconnect(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """Соединение из пула на время блока."""
        async with self.pool.acquire() as connection:
            yield connection

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[Connection, None]:
        """
        Соединение в транзакции: commit при выходе, rollback при исключении.

        Example:
            async with db.transaction() as conn:
                await conn.execute(DELETE_SQL, race_id)
                await conn.execute(INSERT_SQL, *row)
        """
        async with self.pool.acquire() as connection:
            async with connection.transaction():
                yield connection

    @retry_on_connection_error()
    async def execute(self, query: str, *args: Any) -> str:
        """Выполняет запрос и возвращает статус команды (например, 'DELETE 3')."""
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    @retry_on_connection_error()
    async def fetch(self, query: str, *args: Any) -> list[Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    @retry_on_connection_error()
    async def fetchrow(self, query: str, *args: Any) -> Record | None:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @retry_on_connection_error()
    async def fetchval(self, query: str, *args: Any, column: int = 0) -> Any:
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args, column=column)

    async def health_check(self) -> bool:
        """True, если PostgreSQL отвечает на SELECT 1."""
        try:
            return await self.fetchval("SELECT 1") == 1
        except Exception as e:
            await log_error(f"Health check PostgreSQL не прошёл: {e}")
            return False


# =============================================================================
# ГЛОБАЛЬНЫЙ ЭКЗЕМПЛЯР
# =============================================================================

_db_manager: DatabaseManager | None = None


def get_db() -> DatabaseManager:
    """Возвращает глобальный DatabaseManager."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


async def init_db(apply_schema: bool = True) -> DatabaseManager:
    """
    Подключается к PostgreSQL по настройкам и применяет migrations/init.sql.
    """
    from src.config import settings

    db = get_db()
    await db.connect(
        dsn=settings.database.dsn,
        min_size=settings.database.DB_MIN_POOL_SIZE,
        max_size=settings.database.DB_MAX_POOL_SIZE,
        command_timeout=settings.database.DB_COMMAND_TIMEOUT,
    )
    await log_info(
        "PostgreSQL подключён",
        extra={
            "host": settings.database.DB_HOST,
            "port": settings.database.DB_PORT,
            "database": settings.database.DB_NAME,
        },
    )

    if apply_schema:
        await _init_schema(db)
    return db


async def _init_schema(db: DatabaseManager) -> None:
    """Применяет схему под advisory-локом, чтобы инстансы не гонялись."""
    from src.config.loader import get_project_root

    schema_path = get_project_root() / "migrations" / "init.sql"
    if not schema_path.exists():
        await log_error(f"Файл схемы БД не найден: {schema_path}")
        return

    schema_sql = schema_path.read_text(encoding="utf-8")

    try:
        async with db.transaction() as conn:
            await conn.execute("SELECT pg_advisory_xact_lock($1)", SCHEMA_LOCK_ID)
            await conn.execute(schema_sql)
    except asyncpg.PostgresError as e:
        # Параллельный старт двух инстансов: схема уже создана соседом
        if "deadlock detected" in str(e) or "already exists" in str(e):
            await log_warning(f"Схема применена другим процессом: {e}")
            return
        await log_error(f"Ошибка применения схемы БД: {e}", exc_info=True)
        raise

    await log_info("Схема БД применена", extra={"path": str(schema_path)})


async def close_db() -> None:
    """Закрывает пул PostgreSQL."""
    db = get_db()
    if db.is_connected:
        await db.disconnect()
        await log_info("PostgreSQL отключён")
