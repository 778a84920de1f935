"""
Fixed threshold rules, one per sensor type.

evaluate() is pure: the same reading always yields the same candidate (or
None). Boundaries follow the agronomy table:

    SoilHumidity  < 20 critical drought, [20, 30) drought warning,
                  > 80 saturation, [30, 80] normal
    Temperature   < 2 frost risk, > 32 heat stress, [2, 32] normal
    Rainfall      > 20 heavy rain, <= 20 normal
"""

from typing import Callable, Optional

from analysis_alerts.models import (
    AlertCandidate,
    AlertSeverity,
    AlertType,
    SensorReading,
    SensorType,
)

SOIL_DROUGHT_CRITICAL_BELOW = 20.0
SOIL_DROUGHT_WARNING_BELOW = 30.0
SOIL_SATURATION_ABOVE = 80.0
FROST_RISK_BELOW = 2.0
HEAT_STRESS_ABOVE = 32.0
HEAVY_RAIN_ABOVE = 20.0


def _soil_humidity(field_id: int, value: float) -> Optional[AlertCandidate]:
    if value < SOIL_DROUGHT_CRITICAL_BELOW:
        return AlertCandidate(
            type=AlertType.DROUGHT_CRITICAL,
            severity=AlertSeverity.CRITICAL,
            message=(
                f"Critical drought on field {field_id}: soil humidity {value:.1f}% "
                f"is below {SOIL_DROUGHT_CRITICAL_BELOW:.1f}%"
            ),
            trigger_value=value,
        )
    if value < SOIL_DROUGHT_WARNING_BELOW:
        return AlertCandidate(
            type=AlertType.DROUGHT_WARNING,
            severity=AlertSeverity.HIGH,
            message=(
                f"Drought warning on field {field_id}: soil humidity {value:.1f}% "
                f"is below {SOIL_DROUGHT_WARNING_BELOW:.1f}%"
            ),
            trigger_value=value,
        )
    if value > SOIL_SATURATION_ABOVE:
        return AlertCandidate(
            type=AlertType.SATURATION,
            severity=AlertSeverity.MEDIUM,
            message=(
                f"Soil saturation on field {field_id}: soil humidity {value:.1f}% "
                f"is above {SOIL_SATURATION_ABOVE:.1f}%"
            ),
            trigger_value=value,
        )
    return None


def _temperature(field_id: int, value: float) -> Optional[AlertCandidate]:
    if value < FROST_RISK_BELOW:
        return AlertCandidate(
            type=AlertType.FROST_RISK,
            severity=AlertSeverity.CRITICAL,
            message=(
                f"Frost risk on field {field_id}: temperature {value:.1f}°C "
                f"is below {FROST_RISK_BELOW:.1f}°C"
            ),
            trigger_value=value,
        )
    if value > HEAT_STRESS_ABOVE:
        return AlertCandidate(
            type=AlertType.HEAT_STRESS,
            severity=AlertSeverity.HIGH,
            message=(
                f"Heat stress on field {field_id}: temperature {value:.1f}°C "
                f"is above {HEAT_STRESS_ABOVE:.1f}°C"
            ),
            trigger_value=value,
        )
    return None


def _rainfall(field_id: int, value: float) -> Optional[AlertCandidate]:
    if value > HEAVY_RAIN_ABOVE:
        return AlertCandidate(
            type=AlertType.HEAVY_RAIN,
            severity=AlertSeverity.MEDIUM,
            message=(
                f"Heavy rain on field {field_id}: rainfall {value:.1f}mm "
                f"is above {HEAVY_RAIN_ABOVE:.1f}mm"
            ),
            trigger_value=value,
        )
    return None


RULES: dict[SensorType, Callable[[int, float], Optional[AlertCandidate]]] = {
    SensorType.SOIL_HUMIDITY: _soil_humidity,
    SensorType.TEMPERATURE: _temperature,
    SensorType.RAINFALL: _rainfall,
}

_missing = set(SensorType) - set(RULES)
if _missing:
    raise RuntimeError(f"No rule registered for sensor types: {sorted(m.value for m in _missing)}")


def evaluate(reading: SensorReading) -> Optional[AlertCandidate]:
    """Return the alert condition raised by this reading, or None.

    A sensor type outside the closed set raises UnknownSensorType.
    """
    sensor_type = SensorType.parse(reading.sensor_type)
    return RULES[sensor_type](reading.field_id, float(reading.value))


def is_drought_reading(value: float) -> bool:
    """True when a soil humidity value sits in either drought band."""
    return value < SOIL_DROUGHT_WARNING_BELOW
