import logging
from dataclasses import dataclass
from typing import Optional, Union

from analysis_alerts.errors import AlertConstraintViolation
from analysis_alerts.models import Alert, AlertCandidate
from analysis_alerts.stores import AlertStore
from shared.logging import log_event
from shared.metrics import alert_constraint_violations_total, alerts_total

logger = logging.getLogger("analysis_alerts.dedup")


@dataclass(frozen=True)
class Created:
    alert: Alert


@dataclass(frozen=True)
class Suppressed:
    existing_alert_id: Optional[int]


DedupResult = Union[Created, Suppressed]


class AlertDeduplicator:
    """
    Keeps at most one Active alert per (field_id, alert type).

    The lookup and the insert are not atomic. Two consumers racing on the same
    field can both miss the lookup; the partial unique index on active alerts
    rejects the second insert and that consumer reports Suppressed.
    """

    def __init__(self, alerts: AlertStore):
        self._alerts = alerts

    async def ensure_alert(self, field_id: int, candidate: AlertCandidate) -> DedupResult:
        existing = await self._alerts.find_active_by_type(field_id, candidate.type)
        if existing is not None:
            return self._suppressed(field_id, candidate, existing.id)

        self._alerts.add(Alert.from_candidate(field_id, candidate))
        try:
            persisted = await self._alerts.commit()
        except AlertConstraintViolation:
            alert_constraint_violations_total.inc()
            log_event(
                logger,
                "alert_insert_lost_race",
                level="WARNING",
                field_id=field_id,
                alert_type=candidate.type.value,
            )
            winner = await self._alerts.find_active_by_type(field_id, candidate.type)
            return self._suppressed(field_id, candidate, winner.id if winner else None)

        alert = persisted[0]
        alerts_total.labels(alert_type=candidate.type.value, result="created").inc()
        log_event(
            logger,
            "alert_created",
            level="WARNING",
            alert_id=alert.id,
            field_id=field_id,
            alert_type=alert.type.value,
            severity=alert.severity.value,
            trigger_value=alert.trigger_value,
        )
        return Created(alert)

    def _suppressed(self, field_id: int, candidate: AlertCandidate, existing_id) -> Suppressed:
        alerts_total.labels(alert_type=candidate.type.value, result="suppressed").inc()
        log_event(
            logger,
            "alert_suppressed",
            field_id=field_id,
            alert_type=candidate.type.value,
            existing_alert_id=existing_id,
        )
        return Suppressed(existing_id)
