import logging
from dataclasses import dataclass
from typing import Optional

from analysis_alerts.dedup import AlertDeduplicator, DedupResult
from analysis_alerts.models import (
    DROUGHT_ALERT_TYPES,
    AlertCandidate,
    SensorReading,
    SensorType,
)
from analysis_alerts.rules import evaluate, is_drought_reading
from analysis_alerts.stores import AlertStore, ReadingStore
from shared.logging import log_event
from shared.metrics import readings_persisted_total, rule_evaluations_total

logger = logging.getLogger("analysis_alerts.analysis")


@dataclass(frozen=True)
class ProcessingOutcome:
    reading: SensorReading
    candidate: Optional[AlertCandidate] = None
    dedup: Optional[DedupResult] = None
    # False only when a drought candidate was held back by the 24h check.
    drought_confirmed: bool = True


class SensorAnalysisService:
    """Persists one reading, evaluates it and hands any alert to the deduplicator."""

    def __init__(
        self,
        readings: ReadingStore,
        alerts: AlertStore,
        require_sustained_drought: bool = False,
    ):
        self._readings = readings
        self._dedup = AlertDeduplicator(alerts)
        self._require_sustained_drought = require_sustained_drought

    async def process(self, reading: SensorReading) -> ProcessingOutcome:
        self._readings.add(reading)
        persisted = (await self._readings.commit())[0]
        readings_persisted_total.labels(sensor_type=persisted.sensor_type.value).inc()
        log_event(
            logger,
            "reading_persisted",
            level="DEBUG",
            reading_id=persisted.id,
            field_id=persisted.field_id,
            sensor_type=persisted.sensor_type.value,
            value=persisted.value,
        )

        candidate = evaluate(persisted)
        rule_evaluations_total.labels(
            sensor_type=persisted.sensor_type.value,
            outcome="triggered" if candidate else "clear",
        ).inc()
        if candidate is None:
            return ProcessingOutcome(reading=persisted)

        if self._require_sustained_drought and candidate.type in DROUGHT_ALERT_TYPES:
            if not await self._drought_sustained(persisted.field_id):
                log_event(
                    logger,
                    "drought_not_sustained",
                    field_id=persisted.field_id,
                    alert_type=candidate.type.value,
                    value=persisted.value,
                )
                return ProcessingOutcome(
                    reading=persisted, candidate=candidate, drought_confirmed=False
                )

        result = await self._dedup.ensure_alert(persisted.field_id, candidate)
        return ProcessingOutcome(reading=persisted, candidate=candidate, dedup=result)

    async def _drought_sustained(self, field_id: int) -> bool:
        """Every soil humidity reading of the last 24h is in a drought band.

        An empty window (the reading itself is older than 24h) counts as the
        first drought reading and confirms.
        """
        history = await self._readings.find_last_24h(field_id, SensorType.SOIL_HUMIDITY)
        if not history:
            return True
        return all(is_drought_reading(r.value) for r in history)
