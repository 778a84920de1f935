"""
Failure taxonomy for the sensor analysis pipeline.

PayloadRejected subclasses mean the message can never succeed and is
terminated without redelivery, whether found at parse time or when the
database rejects the values. TransientStoreFailure means the message is
negatively acknowledged and redelivered. AlertConstraintViolation is caught
by the deduplicator and turned into a suppressed outcome.
"""


class AnalysisError(Exception):
    """Base exception for the analysis pipeline."""


class PayloadRejected(AnalysisError):
    """The message can never be processed; do not redeliver."""

    reason = "rejected"


class MalformedPayload(PayloadRejected):
    reason = "malformed_payload"


class UnknownSensorType(PayloadRejected):
    reason = "unknown_sensor_type"

    def __init__(self, sensor_type):
        super().__init__(f"Unknown sensor type: {sensor_type!r}")
        self.sensor_type = sensor_type


class UnstorablePayload(PayloadRejected):
    """The database refused the values themselves (range, type or check)."""

    reason = "unstorable_payload"


class TransientStoreFailure(AnalysisError):
    """The store was unreachable, timed out or dropped the connection."""


class AlertConstraintViolation(AnalysisError):
    """An Active alert for the same (field_id, type) was committed concurrently."""

    def __init__(self, field_id: int, alert_type: str):
        super().__init__(
            f"Active alert already exists for field {field_id} type {alert_type}"
        )
        self.field_id = field_id
        self.alert_type = alert_type
