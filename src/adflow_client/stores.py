"""
Postgres-backed raw and normalized event stores (psycopg 3, async pool).

Both stores are idempotent: the raw store ignores a second copy of the same
dedupe key, the normalized store upserts on (campaign, platform, date). Queue
redeliveries therefore never produce duplicate rows.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date
from typing import AsyncIterator, Generic, Sequence, TypedDict, TypeVar

import psycopg
from loguru import logger
from psycopg import sql as psql
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from adflow.coordinator.types import WriteResult
from adflow.errors import StoreError, map_db_error
from adflow.models import NormalizedEvent, RawRecord

from .sql import preset_upsert

R = TypeVar("R")


class StoreConfig(TypedDict, total=False):
    dsn: str
    app_name: str
    statement_timeout_ms: int
    pool_max: int


DEFAULTS: StoreConfig = {
    "pool_max": 10,
    "app_name": "adflow",
}


class _PostgresStore(Generic[R]):
    table: str = ""

    def __init__(self, cfg: StoreConfig):
        self.cfg: StoreConfig = {**DEFAULTS, **(cfg or {})}
        if not self.cfg.get("dsn"):
            raise ValueError("dsn required")
        self.pool = AsyncConnectionPool(
            conninfo=self.cfg["dsn"],
            max_size=self.cfg["pool_max"],
            kwargs={"autocommit": False},
            open=False,
        )
        self.app_name = self.cfg.get("app_name")
        self.statement_timeout_ms = self.cfg.get("statement_timeout_ms")
        self._stmt = preset_upsert(self.table)
        self._opened = False

    async def open(self) -> None:
        if not self._opened:
            await self.pool.open()
            self._opened = True
            logger.info(f"{self.table} store: pool opened (max_size={self.cfg['pool_max']})")

    async def aclose(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False

    @asynccontextmanager
    async def _conn(self) -> AsyncIterator[psycopg.AsyncConnection]:
        await self.open()
        async with self.pool.connection() as conn:
            if self.app_name:
                await conn.execute(
                    psql.SQL("SET application_name = {}").format(psql.Literal(self.app_name))
                )
            if self.statement_timeout_ms:
                await conn.execute(
                    psql.SQL("SET statement_timeout = {}").format(
                        psql.Literal(int(self.statement_timeout_ms))
                    )
                )
            yield conn

    # ---------- health / meta ----------

    async def health(self) -> bool:
        async with self._conn() as conn:
            await conn.execute("SELECT 1")
            return True

    async def schema_version(self) -> str | None:
        async with self._conn() as conn:
            try:
                cur = await conn.execute("SELECT version_num FROM alembic_version LIMIT 1")
                row = await cur.fetchone()
                return row[0] if row else None
            except psycopg.errors.UndefinedTable:
                return None

    # ---------- writes ----------

    def _row(self, record: R) -> dict:
        raise NotImplementedError

    def _key(self, record: R) -> str:
        raise NotImplementedError

    async def insert(self, record: R) -> WriteResult:
        try:
            (result,) = await self.insert_many([record])
        except StoreError as exc:
            return WriteResult.failed(str(exc))
        return result

    async def insert_many(self, records: Sequence[R]) -> list[WriteResult]:
        """Write all records in one transaction.

        Raises:
            StoreError: (or RetryableStoreError) when the transaction fails; no
                record of the batch is committed in that case.
        """
        if not records:
            return []
        data = [self._row(r) for r in records]
        try:
            async with self._conn() as conn:
                async with conn.cursor() as cur:
                    await cur.executemany(self._stmt, data)
                await conn.commit()
        except psycopg.Error as exc:
            err = map_db_error(exc)
            logger.warning(f"{self.table} store: batch of {len(data)} failed: {err}")
            raise err from exc
        logger.debug(f"{self.table} store: wrote {len(data)} rows")
        return [WriteResult.ok(self._key(r)) for r in records]


class RawEventStore(_PostgresStore[RawRecord]):
    """Append-only raw copy of every received event, keyed by ``dedupe_key``."""

    table = "raw_events"

    def _row(self, record: RawRecord) -> dict:
        return {
            "dedupe_key": record.dedupe_key,
            "source": record.source,
            "event_id": record.id,
            "payload": Jsonb(record.payload),
            "event_timestamp": record.timestamp,
            "received_at": record.received_at,
            "message_id": record.message_id,
        }

    def _key(self, record: RawRecord) -> str:
        return record.dedupe_key


class NormalizedEventStore(_PostgresStore[NormalizedEvent]):
    table = "normalized_events"

    def _row(self, record: NormalizedEvent) -> dict:
        row = record.model_dump()
        row["event_date"] = date.fromisoformat(record.event_date)
        return row

    def _key(self, record: NormalizedEvent) -> str:
        return normalized_key(record)


def normalized_key(record: NormalizedEvent) -> str:
    return f"{record.source_platform}:{record.unified_campaign_id}:{record.event_date}"
