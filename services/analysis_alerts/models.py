"""Domain types and the inbound sensor message schema."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from dateutil import parser as dtparser
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from analysis_alerts.errors import MalformedPayload, UnknownSensorType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# field_id is an INTEGER column.
FIELD_ID_MIN = -(2**31)
FIELD_ID_MAX = 2**31 - 1


class SensorType(str, Enum):
    SOIL_HUMIDITY = "SoilHumidity"
    TEMPERATURE = "Temperature"
    RAINFALL = "Rainfall"

    @classmethod
    def parse(cls, raw) -> "SensorType":
        """Case-insensitive lookup. Unknown names raise UnknownSensorType."""
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            wanted = raw.strip().lower()
            for member in cls:
                if member.value.lower() == wanted:
                    return member
        raise UnknownSensorType(raw)


class AlertType(str, Enum):
    DROUGHT_CRITICAL = "DROUGHT_CRITICAL"
    DROUGHT_WARNING = "DROUGHT_WARNING"
    SATURATION = "SATURATION"
    FROST_RISK = "FROST_RISK"
    HEAT_STRESS = "HEAT_STRESS"
    HEAVY_RAIN = "HEAVY_RAIN"


DROUGHT_ALERT_TYPES = frozenset({AlertType.DROUGHT_CRITICAL, AlertType.DROUGHT_WARNING})


class AlertSeverity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"


class AlertStatus(str, Enum):
    ACTIVE = "Active"
    RESOLVED = "Resolved"


@dataclass(frozen=True)
class SensorReading:
    field_id: int
    sensor_type: SensorType
    value: float
    timestamp: datetime
    processed_at: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class AlertCandidate:
    type: AlertType
    severity: AlertSeverity
    message: str
    trigger_value: float


@dataclass(frozen=True)
class Alert:
    field_id: int
    type: AlertType
    severity: AlertSeverity
    message: str
    trigger_value: float
    created_at: datetime = field(default_factory=utcnow)
    status: AlertStatus = AlertStatus.ACTIVE
    resolved_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def from_candidate(cls, field_id: int, candidate: AlertCandidate) -> "Alert":
        return cls(
            field_id=field_id,
            type=candidate.type,
            severity=candidate.severity,
            message=candidate.message,
            trigger_value=candidate.trigger_value,
        )


def parse_ts(v):
    """
    Parse an ISO-8601 timestamp string to an aware datetime.
    Naive timestamps are taken as UTC. Returns None if parsing fails.
    """
    if isinstance(v, datetime):
        return v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)
    if isinstance(v, str):
        try:
            dt = dtparser.isoparse(v)
        except (ValueError, OverflowError):
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


# Lower-cased inbound key -> model field name.
_FIELD_ALIASES = {
    "fieldid": "field_id",
    "field_id": "field_id",
    "sensortype": "sensor_type",
    "sensor_type": "sensor_type",
    "value": "value",
    "timestamp": "timestamp",
}


class SensorDataMessage(BaseModel):
    """One sensor reading as published to the queue."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    field_id: int = Field(..., strict=True, ge=FIELD_ID_MIN, le=FIELD_ID_MAX)
    sensor_type: str = Field(..., min_length=1, max_length=50)
    value: float = Field(..., strict=True, allow_inf_nan=False)
    timestamp: datetime

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        normalized: dict[str, Any] = {}
        for key, value in data.items():
            name = _FIELD_ALIASES.get(str(key).lower(), key)
            if name in normalized:
                raise ValueError(f"duplicate field {key!r}")
            normalized[name] = value
        return normalized

    @field_validator("field_id", mode="before")
    @classmethod
    def require_json_integer(cls, v):
        if isinstance(v, bool) or not isinstance(v, int):
            raise ValueError("fieldId must be a JSON integer")
        return v

    @field_validator("value", mode="before")
    @classmethod
    def require_json_number(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("value must be a JSON number")
        try:
            return float(v)
        except OverflowError:
            raise ValueError("value is out of range")

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp(cls, v):
        ts = parse_ts(v)
        if ts is None:
            raise ValueError("timestamp must be an ISO-8601 datetime")
        return ts

    def to_reading(self, processed_at: Optional[datetime] = None) -> SensorReading:
        return SensorReading(
            field_id=self.field_id,
            sensor_type=SensorType.parse(self.sensor_type),
            value=self.value,
            timestamp=self.timestamp,
            processed_at=processed_at or utcnow(),
        )


def parse_sensor_message(data: bytes) -> SensorDataMessage:
    """Decode a queue payload. Raises MalformedPayload on any decode/schema error."""
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MalformedPayload(f"invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedPayload("payload must be a JSON object")
    try:
        return SensorDataMessage.model_validate(payload)
    except ValidationError as exc:
        raise MalformedPayload(f"invalid sensor message: {exc.error_count()} error(s)") from exc
