"""
Calibration Engine

Converts a decoded raw value into an engineering-unit value for a
(device, point), using the sensor type registered for that point.

Resolution order:
1. No sensor registered for the point: raw value passes through.
2. Lookup table for the sensor type: clamp at the ends, interpolate
   linearly in between, round to the nearest integer unit.
3. Otherwise the first formula segment whose [raw_min, raw_max)
   contains the raw value.
4. No segment matches or the formula fails: raw value passes through.

Calibration never raises once the engine is constructed.
"""

import math
from dataclasses import dataclass, field

from ...common.config import CalibrationSettings
from ...common.exceptions import ConfigError
from ...common.logging_setup import get_service_logger
from .expression import CompiledFormula, FormulaError, compile_formula

logger = get_service_logger("calibration")


@dataclass
class CompiledSegment:
    raw_min: float
    raw_max: float
    formula: CompiledFormula

    def contains(self, raw: float) -> bool:
        return self.raw_min <= raw < self.raw_max


@dataclass
class CompiledRule:
    sensor_type: str
    table: list[tuple[float, float]] = field(default_factory=list)  # Sorted by raw
    segments: list[CompiledSegment] = field(default_factory=list)


def round_half_up(value: float) -> float:
    """Round to the nearest integer, halves away from minus infinity"""
    return float(math.floor(value + 0.5))


def interpolate(table: list[tuple[float, float]], x: float) -> float | None:
    """
    Piecewise-linear lookup in a table sorted by raw value.

    Returns:
        Engineering value, or None if the table is empty
    """
    if not table:
        return None

    x_min, y_min = table[0]
    x_max, y_max = table[-1]
    if x <= x_min:
        return y_min
    if x >= x_max:
        return y_max

    for (x1, y1), (x2, y2) in zip(table, table[1:]):
        if x1 <= x <= x2:
            if x2 == x1:
                return y1
            y = y1 + (x - x1) * (y2 - y1) / (x2 - x1)
            return round_half_up(y)

    return None


class CalibrationEngine:
    """
    Pure calibration over static configuration.

    Construction compiles every formula and sorts every lookup table once;
    invalid configuration raises ConfigError here, before polling starts.
    """

    def __init__(self, settings: CalibrationSettings):
        self._rules: dict[str, CompiledRule] = {}
        self._sensors: dict[tuple[str, str], str] = {}
        errors: list[str] = []

        for sensor_type, rule in settings.rules.items():
            compiled = CompiledRule(
                sensor_type=sensor_type,
                table=sorted(rule.lookup_table, key=lambda entry: entry[0]),
            )
            for segment in rule.segments:
                try:
                    formula = compile_formula(segment.formula)
                except FormulaError as e:
                    errors.append(f"{sensor_type}: {e}")
                    continue
                compiled.segments.append(CompiledSegment(
                    raw_min=segment.raw_min,
                    raw_max=segment.raw_max,
                    formula=formula,
                ))
            self._rules[sensor_type] = compiled

        for mapping in settings.mappings:
            if mapping.sensor_type not in self._rules:
                errors.append(
                    f"sensor {mapping.device_id}/{mapping.point_name} references "
                    f"unknown sensor type '{mapping.sensor_type}'"
                )
                continue
            self._sensors[(mapping.device_id, mapping.point_name)] = mapping.sensor_type

        if errors:
            raise ConfigError("invalid calibration configuration", errors=errors)

        logger.info(
            f"Calibration loaded: {len(self._rules)} sensor types, "
            f"{len(self._sensors)} mapped points"
        )

    def sensor_type_for(self, device_id: str, point_name: str) -> str | None:
        return self._sensors.get((device_id, point_name))

    def calibrate(self, device_id: str, point_name: str, raw_value: float) -> float:
        """Engineering value for a raw reading; raw value on any failure"""
        sensor_type = self._sensors.get((device_id, point_name))
        if sensor_type is None:
            return raw_value

        rule = self._rules[sensor_type]

        value = interpolate(rule.table, raw_value)
        if value is not None:
            return value

        segment = next((s for s in rule.segments if s.contains(raw_value)), None)
        if segment is None:
            logger.debug(
                f"No calibration range for {sensor_type} at raw value {raw_value}"
            )
            return raw_value

        try:
            # huge int results overflow here, not in the formula
            value = float(segment.formula.evaluate(raw_value))
        except (ArithmeticError, ValueError, TypeError) as e:
            logger.warning(
                f"Formula evaluation failed for {sensor_type} "
                f"({segment.formula.source}) at {raw_value}: {e}"
            )
            return raw_value

        if not math.isfinite(value):
            logger.warning(f"Formula for {sensor_type} produced {value!r} at {raw_value}")
            return raw_value

        return value
