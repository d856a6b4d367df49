"""Conversion of raw 4-20 mA loop values into engineering units."""

from __future__ import annotations

from typing import Optional

from models.devices import Sensor, SensorType

LOOP_MIN_MA = 4.0
LOOP_MAX_MA = 20.0
LOOP_SPAN_MA = LOOP_MAX_MA - LOOP_MIN_MA

DEFAULT_WELL_DEPTH_M = 50.0
DEFAULT_FULL_SCALE_DEGREES = 15.0
DEFAULT_GE_RANGE = 50.0
ARCSEC_PER_DEGREE = 3600.0

# sensor types whose readings are shown relative to a calibrated zero
_ZEROED_TYPES = frozenset({SensorType.tilt, SensorType.extensometer})


def normalize(raw: float) -> float:
    """Clamp a loop current to 4-20 mA and scale it to [0, 1]."""
    clamped = min(max(raw, LOOP_MIN_MA), LOOP_MAX_MA)
    return (clamped - LOOP_MIN_MA) / LOOP_SPAN_MA


def decode(sensor_type: SensorType, raw: float, calibration: Optional[Sensor] = None) -> float:
    """Map a raw instrument value to its engineering value.

    Water level yields metres (the sign of ``well_depth`` sets polarity), tilt
    yields arc-seconds about the 12 mA midpoint, and extensometers yield a
    displacement in the unit of ``ge_range``. Rain gauge counters and any
    other sensor type pass through unchanged.
    """

    if sensor_type is SensorType.water_level:
        depth = _calibration_value(calibration, "well_depth", DEFAULT_WELL_DEPTH_M)
        return normalize(raw) * depth
    if sensor_type is SensorType.tilt:
        full_scale = _calibration_value(
            calibration, "full_scale_degrees", DEFAULT_FULL_SCALE_DEGREES
        )
        degrees = (normalize(raw) - 0.5) * 2 * full_scale
        return degrees * ARCSEC_PER_DEGREE
    if sensor_type is SensorType.extensometer:
        span = _calibration_value(calibration, "ge_range", DEFAULT_GE_RANGE)
        return normalize(raw) * span
    return raw


def display_delta(
    sensor_type: SensorType,
    raw: float,
    calibration: Optional[Sensor],
    channel: str,
) -> Optional[float]:
    """Engineering value relative to the channel's calibrated zero.

    Returns ``None`` when the sensor type has no zero point or the channel has
    no initial value; callers then show the engineering value itself.
    """

    if sensor_type not in _ZEROED_TYPES or calibration is None:
        return None
    initial = calibration.initial_values.get(channel)
    if initial is None:
        return None
    return decode(sensor_type, raw, calibration) - decode(sensor_type, initial, calibration)


def classify(value: Optional[float], threshold: float) -> Optional[str]:
    if value is None:
        return None
    return "abnormal" if abs(value) >= threshold else "normal"


def _calibration_value(calibration: Optional[Sensor], name: str, default: float) -> float:
    if calibration is None:
        return default
    value = getattr(calibration, name)
    return default if value is None else float(value)
