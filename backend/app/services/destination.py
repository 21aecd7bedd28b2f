"""Connections to user-owned destination databases.

``PoolRegistry`` keeps one SQLAlchemy ``AsyncEngine`` per credential for the
lifetime of the worker process. Engines are created lazily, validated with
``SELECT 1`` before they are cached and disposed once they sit idle for longer
than the configured timeout. ``DestinationWriter`` inserts category rows with
``ON CONFLICT ... DO NOTHING`` so redelivered events never duplicate data.
"""
from __future__ import annotations

import asyncio
import json
import re
import ssl
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, AsyncIterator, Callable, Dict, Optional, Sequence

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import URL
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.core.config import settings
from app.core.crypto import decrypt_secret
from app.models.credential import DbCredential
from app.models.enums import SslMode
from app.services.categories import DestinationRow

TABLE_NAME_RE = re.compile(r"^[a-zA-Z0-9_]+$")

SSL_MODES = {SslMode.require, SslMode.allow, SslMode.prefer}

# undefined table, undefined column, datatype mismatch, invalid text
# representation, no unique constraint matching ON CONFLICT
SCHEMA_SQLSTATES = {"42P01", "42703", "42804", "22P02", "42P10"}
SCHEMA_MESSAGES = (
    "no such table",
    "no such column",
    "has no column named",
    "does not exist",
    "on conflict clause does not match",
)


class DestinationSchemaError(RuntimeError):
    """The destination table is missing or does not fit the category rows."""


class PoolValidationError(RuntimeError):
    """A freshly created destination pool failed its ``SELECT 1`` check."""


def _sqlstate(exc: BaseException) -> Optional[str]:
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("sqlstate", "pgcode"):
            code = getattr(current, attr, None)
            if isinstance(code, str) and code:
                return code
        current = getattr(current, "orig", None) or current.__cause__
    return None


def is_schema_error(exc: BaseException) -> bool:
    if isinstance(exc, DestinationSchemaError):
        return True
    if isinstance(exc, PoolValidationError):
        return False
    if _sqlstate(exc) in SCHEMA_SQLSTATES:
        return True
    message = str(getattr(exc, "orig", None) or exc).lower()
    return any(marker in message for marker in SCHEMA_MESSAGES)


def build_destination_url(credential: DbCredential, password: str) -> URL:
    return URL.create(
        "postgresql+asyncpg",
        username=credential.username,
        password=password,
        host=credential.host,
        port=credential.port,
        database=credential.db_name,
    )


def _ssl_argument(mode: SslMode) -> Any:
    if mode not in SSL_MODES:
        return False
    # TLS without certificate verification
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def create_destination_engine(
    credential: DbCredential,
    password: str,
    *,
    pool_size: int | None = None,
    pool_timeout: float | None = None,
    connect_timeout: float | None = None,
    command_timeout: float | None = None,
) -> AsyncEngine:
    return create_async_engine(
        build_destination_url(credential, password),
        pool_size=pool_size or settings.destination_pool_size,
        max_overflow=0,
        pool_timeout=pool_timeout or settings.destination_pool_timeout,
        connect_args={
            "timeout": connect_timeout or settings.destination_connect_timeout,
            "command_timeout": command_timeout or settings.destination_command_timeout,
            "ssl": _ssl_argument(SslMode(credential.ssl_mode)),
        },
    )


EngineFactory = Callable[[DbCredential, str], AsyncEngine]


@dataclass
class _PoolEntry:
    engine: AsyncEngine
    last_used: float
    leases: int = 0


class PoolRegistry:
    def __init__(
        self,
        *,
        engine_factory: EngineFactory | None = None,
        idle_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._engine_factory = engine_factory or create_destination_engine
        self._idle_timeout = idle_timeout if idle_timeout is not None else settings.destination_idle_timeout
        self._clock = clock
        self._pools: Dict[int, _PoolEntry] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._pools)

    def __contains__(self, credential_id: object) -> bool:
        return credential_id in self._pools

    async def _get_or_create(self, credential: DbCredential) -> _PoolEntry:
        entry = self._pools.get(credential.id)
        if entry is not None:
            return entry

        lock = self._locks.setdefault(credential.id, asyncio.Lock())
        async with lock:
            entry = self._pools.get(credential.id)
            if entry is not None:
                return entry

            password = decrypt_secret(credential.encrypted_password)
            logger.info(
                "Creating destination pool for credential {}",
                credential.id,
                host=credential.host,
                username=credential.username,
            )
            engine = self._engine_factory(credential, password)
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            except Exception as exc:
                await engine.dispose()
                logger.error("Destination pool validation failed", credential_id=credential.id, error=str(exc))
                raise PoolValidationError(f"Failed to connect to destination database: {exc}") from exc

            entry = _PoolEntry(engine=engine, last_used=self._clock())
            self._pools[credential.id] = entry
            return entry

    @asynccontextmanager
    async def lease(self, credential: DbCredential) -> AsyncIterator[AsyncEngine]:
        """Borrow the credential's engine; it is never evicted while leased."""
        entry = await self._get_or_create(credential)
        entry.leases += 1
        try:
            yield entry.engine
        finally:
            entry.leases -= 1
            entry.last_used = self._clock()

    async def evict_idle(self) -> int:
        now = self._clock()
        idle = [
            credential_id
            for credential_id, entry in self._pools.items()
            if entry.leases == 0 and now - entry.last_used >= self._idle_timeout
        ]
        for credential_id in idle:
            await self.discard(credential_id)
        if idle:
            logger.debug("Evicted {} idle destination pools", len(idle))
        return len(idle)

    async def discard(self, credential_id: int) -> None:
        entry = self._pools.pop(credential_id, None)
        self._locks.pop(credential_id, None)
        if entry is not None:
            await entry.engine.dispose()

    async def close_all(self) -> None:
        entries = list(self._pools.values())
        self._pools.clear()
        self._locks.clear()
        logger.info("Closing {} cached destination pools", len(entries))
        results = await asyncio.gather(*(entry.engine.dispose() for entry in entries), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Failed to dispose destination pool", error=str(result))


def _quote(identifier: str) -> str:
    return f'"{identifier}"'


def _bind_value(value: Any, *, native: bool) -> Any:
    if native or value is None:
        return value
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class DestinationWriter:
    def __init__(self, engine: AsyncEngine, *, schema: str | None = None):
        self.engine = engine
        self.schema = schema if schema is not None else settings.destination_schema

    @property
    def _postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    def _qualified(self, table: str) -> str:
        if self._postgres and self.schema:
            return f"{_quote(self.schema)}.{_quote(table)}"
        return _quote(table)

    async def insert_rows(self, table: str, rows: Sequence[DestinationRow]) -> int:
        """Insert rows, skipping natural-key conflicts. Returns rows actually written."""
        if not TABLE_NAME_RE.match(table or ""):
            raise DestinationSchemaError(f"Invalid target table name specified: {table}")
        if not rows:
            return 0

        conflict = ", ".join(_quote(column) for column in type(rows[0]).conflict_columns)
        columns = list(rows[0].to_params())
        statement = text(
            f"INSERT INTO {self._qualified(table)} ({', '.join(_quote(c) for c in columns)}) "
            f"VALUES ({', '.join(f':{c}' for c in columns)}) "
            f"ON CONFLICT ({conflict}) DO NOTHING"
        )
        native = self._postgres
        inserted = 0
        try:
            async with self.engine.begin() as conn:
                for row in rows:
                    params = {key: _bind_value(value, native=native) for key, value in row.to_params().items()}
                    result = await conn.execute(statement, params)
                    inserted += max(result.rowcount or 0, 0)
        except DBAPIError as exc:
            if is_schema_error(exc):
                raise DestinationSchemaError(str(exc.orig or exc)) from exc
            raise
        return inserted
