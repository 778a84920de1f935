"""
Reading and alert stores.

Both stores follow a small unit-of-work contract: add() stages a record in
memory and commit() writes every staged record in one transaction, returning
the persisted copies with their database ids. Staged records are discarded
whether or not the commit succeeds.

Connection-level failures and timeouts surface as TransientStoreFailure so
the consumer can route them to redelivery. Values the database refuses
(out-of-range numbers, failed checks) surface as UnstorablePayload, which
the consumer terminates instead of redelivering.
"""

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import AsyncIterator, Optional, Protocol

import asyncpg

from analysis_alerts.errors import AlertConstraintViolation, TransientStoreFailure, UnstorablePayload
from analysis_alerts.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    SensorReading,
    SensorType,
    utcnow,
)
from shared.logging import log_event

logger = logging.getLogger("analysis_alerts.stores")

LOOKBACK = timedelta(hours=24)

_TRANSIENT_ERRORS = (
    asyncio.TimeoutError,
    OSError,
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.TooManyConnectionsError,
)

# The statement was well formed but the values can never be stored.
_DATA_ERRORS = (
    asyncpg.DataError,
    asyncpg.IntegrityConstraintViolationError,
)


class ReadingStore(Protocol):
    def add(self, reading: SensorReading) -> None: ...

    async def commit(self) -> list[SensorReading]: ...

    async def find_last_24h(self, field_id: int, sensor_type: SensorType) -> list[SensorReading]: ...


class AlertStore(Protocol):
    def add(self, alert: Alert) -> None: ...

    async def commit(self) -> list[Alert]: ...

    async def find_active(self, field_id: int) -> list[Alert]: ...

    async def find_active_by_type(self, field_id: int, alert_type: AlertType) -> Optional[Alert]: ...


def reading_from_row(row) -> SensorReading:
    return SensorReading(
        id=row["id"],
        field_id=row["field_id"],
        sensor_type=SensorType(row["sensor_type"]),
        value=float(row["value"]),
        timestamp=row["timestamp"],
        processed_at=row["processed_at"],
    )


def alert_from_row(row) -> Alert:
    return Alert(
        id=row["id"],
        field_id=row["field_id"],
        type=AlertType(row["type"]),
        severity=AlertSeverity(row["severity"]),
        status=AlertStatus(row["status"]),
        message=row["message"],
        trigger_value=float(row["trigger_value"]),
        created_at=row["created_at"],
        resolved_at=row["resolved_at"],
    )


class _PgStore:
    def __init__(self, pool: asyncpg.Pool, timeout: float = 5.0):
        self._pool = pool
        self._timeout = timeout

    @contextlib.asynccontextmanager
    async def _connection(self, operation: str, transaction: bool = False) -> AsyncIterator:
        try:
            async with self._pool.acquire(timeout=self._timeout) as conn:
                if transaction:
                    async with conn.transaction():
                        yield conn
                else:
                    yield conn
        except asyncpg.UniqueViolationError:
            raise
        except _DATA_ERRORS as exc:
            log_event(
                logger,
                "store_rejected_values",
                level="WARNING",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UnstorablePayload(f"{operation} rejected: {type(exc).__name__}: {exc}") from exc
        except _TRANSIENT_ERRORS as exc:
            log_event(
                logger,
                "store_call_failed",
                level="WARNING",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TransientStoreFailure(f"{operation} failed: {type(exc).__name__}: {exc}") from exc


class PgReadingStore(_PgStore):
    def __init__(self, pool: asyncpg.Pool, timeout: float = 5.0):
        super().__init__(pool, timeout)
        self._pending: list[SensorReading] = []

    def add(self, reading: SensorReading) -> None:
        self._pending.append(reading)

    async def commit(self) -> list[SensorReading]:
        pending, self._pending = self._pending, []
        if not pending:
            return []
        persisted = []
        async with self._connection("commit_readings", transaction=True) as conn:
            for reading in pending:
                # A redelivered message hits the natural key and returns the stored row.
                row = await conn.fetchrow(
                    """
                    INSERT INTO sensor_readings (field_id, sensor_type, value, timestamp, processed_at)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (field_id, sensor_type, timestamp)
                    DO UPDATE SET processed_at = sensor_readings.processed_at
                    RETURNING id, field_id, sensor_type, value, timestamp, processed_at,
                              (xmax = 0) AS inserted
                    """,
                    reading.field_id,
                    reading.sensor_type.value,
                    reading.value,
                    reading.timestamp,
                    reading.processed_at,
                    timeout=self._timeout,
                )
                if not row["inserted"]:
                    log_event(
                        logger,
                        "reading_already_stored",
                        reading_id=row["id"],
                        field_id=reading.field_id,
                        sensor_type=reading.sensor_type.value,
                    )
                persisted.append(reading_from_row(row))
        return persisted

    async def find_last_24h(self, field_id: int, sensor_type: SensorType) -> list[SensorReading]:
        cutoff = utcnow() - LOOKBACK
        async with self._connection("find_last_24h") as conn:
            rows = await conn.fetch(
                """
                SELECT id, field_id, sensor_type, value, timestamp, processed_at
                FROM sensor_readings
                WHERE field_id = $1
                  AND sensor_type = $2
                  AND timestamp >= $3
                ORDER BY timestamp DESC
                """,
                field_id,
                SensorType.parse(sensor_type).value,
                cutoff,
                timeout=self._timeout,
            )
        return [reading_from_row(r) for r in rows]


class PgAlertStore(_PgStore):
    def __init__(self, pool: asyncpg.Pool, timeout: float = 5.0):
        super().__init__(pool, timeout)
        self._pending: list[Alert] = []

    def add(self, alert: Alert) -> None:
        self._pending.append(alert)

    async def commit(self) -> list[Alert]:
        pending, self._pending = self._pending, []
        if not pending:
            return []
        persisted = []
        current = None
        try:
            async with self._connection("commit_alerts", transaction=True) as conn:
                for alert in pending:
                    current = alert
                    row = await conn.fetchrow(
                        """
                        INSERT INTO alerts
                            (field_id, type, severity, status, message, trigger_value, created_at, resolved_at)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        RETURNING id, field_id, type, severity, status, message, trigger_value,
                                  created_at, resolved_at
                        """,
                        alert.field_id,
                        alert.type.value,
                        alert.severity.value,
                        alert.status.value,
                        alert.message,
                        alert.trigger_value,
                        alert.created_at,
                        alert.resolved_at,
                        timeout=self._timeout,
                    )
                    persisted.append(alert_from_row(row))
        except asyncpg.UniqueViolationError as exc:
            raise AlertConstraintViolation(current.field_id, current.type.value) from exc
        return persisted

    async def find_active(self, field_id: int) -> list[Alert]:
        async with self._connection("find_active") as conn:
            rows = await conn.fetch(
                """
                SELECT id, field_id, type, severity, status, message, trigger_value,
                       created_at, resolved_at
                FROM alerts
                WHERE field_id = $1 AND status = $2
                ORDER BY created_at DESC
                """,
                field_id,
                AlertStatus.ACTIVE.value,
                timeout=self._timeout,
            )
        return [alert_from_row(r) for r in rows]

    async def find_active_by_type(self, field_id: int, alert_type: AlertType) -> Optional[Alert]:
        async with self._connection("find_active_by_type") as conn:
            row = await conn.fetchrow(
                """
                SELECT id, field_id, type, severity, status, message, trigger_value,
                       created_at, resolved_at
                FROM alerts
                WHERE field_id = $1 AND type = $2 AND status = $3
                LIMIT 1
                """,
                field_id,
                AlertType(alert_type).value,
                AlertStatus.ACTIVE.value,
                timeout=self._timeout,
            )
        return alert_from_row(row) if row is not None else None
