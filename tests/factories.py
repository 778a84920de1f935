import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from analysis_alerts.errors import AlertConstraintViolation
from analysis_alerts.models import (
    Alert,
    AlertSeverity,
    AlertStatus,
    AlertType,
    SensorReading,
    SensorType,
)


class FakeRecord(dict):
    """Dict subclass that supports attribute-style access (row.col)."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError as exc:
            raise AttributeError(name) from exc


def sensor_payload(overrides: dict | None = None) -> dict:
    payload = {
        "fieldId": 5,
        "sensorType": "SoilHumidity",
        "value": 15.0,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if overrides:
        payload.update(overrides)
    return payload


def fake_reading(**overrides) -> SensorReading:
    now = datetime.now(timezone.utc)
    values = {
        "field_id": 5,
        "sensor_type": SensorType.SOIL_HUMIDITY,
        "value": 15.0,
        "timestamp": now,
        "processed_at": now,
    }
    values.update(overrides)
    return SensorReading(**values)


def fake_alert(**overrides) -> Alert:
    values = {
        "field_id": 7,
        "type": AlertType.DROUGHT_WARNING,
        "severity": AlertSeverity.HIGH,
        "message": "Drought warning on field 7: soil humidity 25.0% is below 30.0%",
        "trigger_value": 25.0,
    }
    values.update(overrides)
    return Alert(**values)


def reading_row(**overrides) -> FakeRecord:
    now = datetime.now(timezone.utc)
    record = FakeRecord(
        {
            "id": 1,
            "field_id": 5,
            "sensor_type": "SoilHumidity",
            "value": 15.0,
            "timestamp": now,
            "processed_at": now,
            "inserted": True,
        }
    )
    record.update(overrides)
    return record


def alert_row(**overrides) -> FakeRecord:
    record = FakeRecord(
        {
            "id": 1,
            "field_id": 5,
            "type": "DROUGHT_CRITICAL",
            "severity": "Critical",
            "status": "Active",
            "message": "Critical drought on field 5: soil humidity 15.0% is below 20.0%",
            "trigger_value": 15.0,
            "created_at": datetime.now(timezone.utc),
            "resolved_at": None,
        }
    )
    record.update(overrides)
    return record


class InMemoryReadingStore:
    """Reading store with the same natural-key upsert as sensor_readings."""

    def __init__(self, fail_on_commit: Exception | None = None):
        self.rows: list[SensorReading] = []
        self._pending: list[SensorReading] = []
        self._next_id = 1
        self.fail_on_commit = fail_on_commit
        self.lookups = 0

    def add(self, reading: SensorReading) -> None:
        self._pending.append(reading)

    async def commit(self) -> list[SensorReading]:
        pending, self._pending = self._pending, []
        if self.fail_on_commit is not None:
            raise self.fail_on_commit
        persisted = []
        for reading in pending:
            existing = next(
                (
                    r
                    for r in self.rows
                    if (r.field_id, r.sensor_type, r.timestamp)
                    == (reading.field_id, reading.sensor_type, reading.timestamp)
                ),
                None,
            )
            if existing is None:
                existing = replace(reading, id=self._next_id)
                self._next_id += 1
                self.rows.append(existing)
            persisted.append(existing)
        return persisted

    async def find_last_24h(self, field_id: int, sensor_type: SensorType) -> list[SensorReading]:
        self.lookups += 1
        cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
        matches = [
            r
            for r in self.rows
            if r.field_id == field_id and r.sensor_type == sensor_type and r.timestamp >= cutoff
        ]
        return sorted(matches, key=lambda r: r.timestamp, reverse=True)


class InMemoryAlertStore:
    """Alert store that enforces the one-active-alert-per-(field, type) index."""

    def __init__(self, fail_on_commit: Exception | None = None, stale_reads: int = 0):
        self.rows: list[Alert] = []
        self._pending: list[Alert] = []
        self._next_id = 1
        self.fail_on_commit = fail_on_commit
        # Number of find_active_by_type calls that miss, as a concurrent reader would.
        self.stale_reads = stale_reads
        self.commits = 0

    def seed(self, alert: Alert) -> Alert:
        stored = replace(alert, id=self._next_id)
        self._next_id += 1
        self.rows.append(stored)
        return stored

    def add(self, alert: Alert) -> None:
        self._pending.append(alert)

    async def commit(self) -> list[Alert]:
        pending, self._pending = self._pending, []
        self.commits += 1
        if self.fail_on_commit is not None:
            raise self.fail_on_commit
        persisted = []
        for alert in pending:
            if alert.status == AlertStatus.ACTIVE and self._active(alert.field_id, alert.type):
                raise AlertConstraintViolation(alert.field_id, alert.type.value)
            persisted.append(self.seed(alert))
        return persisted

    def _active(self, field_id: int, alert_type: AlertType):
        return [
            a
            for a in self.rows
            if a.field_id == field_id and a.type == alert_type and a.status == AlertStatus.ACTIVE
        ]

    async def find_active(self, field_id: int) -> list[Alert]:
        matches = [a for a in self.rows if a.field_id == field_id and a.status == AlertStatus.ACTIVE]
        return sorted(matches, key=lambda a: a.created_at, reverse=True)

    async def find_active_by_type(self, field_id: int, alert_type: AlertType):
        if self.stale_reads > 0:
            self.stale_reads -= 1
            return None
        matches = self._active(field_id, alert_type)
        return matches[0] if matches else None


class FakeMsg:
    """Stand-in for a JetStream message; records how it was resolved."""

    def __init__(self, payload, seq: int = 1, num_delivered: int = 1, fail_ack: Exception | None = None):
        if isinstance(payload, (bytes, bytearray)):
            self.data = bytes(payload)
        elif isinstance(payload, str):
            self.data = payload.encode()
        else:
            self.data = json.dumps(payload).encode()
        self.metadata = SimpleNamespace(
            sequence=SimpleNamespace(stream=seq, consumer=seq),
            num_delivered=num_delivered,
        )
        self.fail_ack = fail_ack
        self.calls: list[str] = []
        self.nak_delay = None

    async def ack(self):
        if self.fail_ack is not None:
            raise self.fail_ack
        self.calls.append("ack")

    async def nak(self, delay=None):
        self.nak_delay = delay
        self.calls.append("nak")

    async def term(self):
        self.calls.append("term")


class FakeSubscription:
    """Pull subscription that replays scripted fetch results, then stops the consumer."""

    def __init__(self, script, on_exhausted=None):
        self._script = list(script)
        self._on_exhausted = on_exhausted
        self.fetch_calls = []

    async def fetch(self, batch=1, timeout=None):
        self.fetch_calls.append((batch, timeout))
        if not self._script:
            if self._on_exhausted is not None:
                self._on_exhausted()
            raise asyncio.TimeoutError("nats: timeout")
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeConn:
    def __init__(self, fetchrow_results=None, fetch_rows=None, fetchrow_error=None):
        self._fetchrow_results = list(fetchrow_results or [])
        self._fetch_rows = fetch_rows or []
        self.fetchrow_error = fetchrow_error
        self.fetch_calls = []
        self.fetchrow_calls = []
        self.transactions = 0

    async def fetch(self, *args, **kwargs):
        self.fetch_calls.append((args, kwargs))
        return self._fetch_rows

    async def fetchrow(self, *args, **kwargs):
        self.fetchrow_calls.append((args, kwargs))
        if self.fetchrow_error is not None:
            raise self.fetchrow_error
        if self._fetchrow_results:
            return self._fetchrow_results.pop(0)
        return None

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn, acquire_error=None):
        self.conn = conn
        self.acquire_error = acquire_error
        self.acquire_timeouts = []

    @asynccontextmanager
    async def acquire(self, timeout=None):
        self.acquire_timeouts.append(timeout)
        if self.acquire_error is not None:
            raise self.acquire_error
        yield self.conn
