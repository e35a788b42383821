# control/sampling.py

import asyncio
import logging
import math
import statistics
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from shared_libs.config_models.catalog_models import DeviceTemplate, ResponseMapping
from shared_libs.config_models.topology_models import DeviceDefinition, FallbackAction
from shared_libs.hardware_core.compiler import CommandCompiler, CommandPlan
from shared_libs.hardware_core.errors import HydroflowError, TransportError, ValidationFailure
from shared_libs.hardware_core.topology import ResolvedBinding

from control.conditions import as_number
from control.transport import TransportManager

logger = logging.getLogger(__name__)

SOURCE_MEASURED = "measured"
SOURCE_LAST_VALID = "last_valid"
SOURCE_DEFAULT = "default"
SOURCE_SKIPPED = "skipped"

# Keys tried, in order, when a response is a mapping and no value_path is set.
_VALUE_KEYS = ("val", "value", "raw")


@dataclass
class DeviceHealth:
    last_value: Optional[float] = None
    last_valid_at: Optional[float] = None
    consecutive_failures: int = 0


@dataclass(frozen=True)
class Reading:
    device_id: str
    value: Optional[float]
    source: str = SOURCE_MEASURED
    samples: Tuple[float, ...] = field(default_factory=tuple)
    attempts: int = 1
    error: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.source == SOURCE_SKIPPED


def _walk(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def extract_value(data: Any, mapping: Optional[ResponseMapping], controller_id: str) -> float:
    """Pull a numeric reading out of a response's data field."""
    if mapping is not None and mapping.value_path:
        raw = _walk(data, mapping.value_path)
    elif isinstance(data, (list, tuple)):
        raw = data[0] if data else None
    elif isinstance(data, dict):
        raw = next((data[k] for k in _VALUE_KEYS if k in data), None)
    else:
        raw = data
    value = as_number(raw)
    if value is None:
        raise TransportError(controller_id, f"response carries no numeric reading: {data!r}")
    if mapping is not None:
        value = value * mapping.scale + mapping.offset
    return value


def effective_range(device: DeviceDefinition, template: DeviceTemplate) -> Tuple[Optional[float], Optional[float]]:
    """Template hardware limits intersected with the device's own range."""
    bounds_min: List[float] = []
    bounds_max: List[float] = []
    for source in (template.limits, device.validation.range):
        if source is None:
            continue
        if source.min_value is not None:
            bounds_min.append(source.min_value)
        if source.max_value is not None:
            bounds_max.append(source.max_value)
    return (max(bounds_min) if bounds_min else None, min(bounds_max) if bounds_max else None)


class SamplingPipeline:
    """Turns one physical read into a value the flow can trust.

    Health (last good value, consecutive failures) is kept per device; pass
    the same `health` mapping to pipelines that should share it.
    """

    def __init__(
        self,
        compiler: CommandCompiler,
        transports: TransportManager,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        health: Optional[Dict[str, DeviceHealth]] = None,
    ):
        self.compiler = compiler
        self.transports = transports
        self.clock = clock
        self.sleep = sleep
        self._health: Dict[str, DeviceHealth] = health if health is not None else {}

    def health(self, device_id: str) -> DeviceHealth:
        if device_id not in self._health:
            self._health[device_id] = DeviceHealth()
        return self._health[device_id]

    async def read(
        self,
        device: DeviceDefinition,
        template: DeviceTemplate,
        binding: ResolvedBinding,
        *,
        sample_count: Optional[int] = None,
        sample_delay_ms: Optional[int] = None,
    ) -> Reading:
        config = device.validation
        count = sample_count or config.sample_count
        delay_ms = config.sample_delay_ms if sample_delay_ms is None else sample_delay_ms
        plan = self.compiler.compile_plan(template, binding)
        low, high = effective_range(device, template)
        health = self.health(device.id)

        attempts = config.retry_count + 1
        last_error: Optional[HydroflowError] = None
        for attempt in range(1, attempts + 1):
            try:
                value, samples = await self._sample(plan, count, delay_ms)
                self._check_range(device.id, value, low, high)
            except (TransportError, ValidationFailure) as e:
                last_error = e
                logger.warning(f"Read of '{device.id}' failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts and config.retry_delay_ms:
                    await self.sleep(config.retry_delay_ms / 1000.0)
                continue
            health.consecutive_failures = 0
            health.last_value = value
            health.last_valid_at = self.clock()
            return Reading(device_id=device.id, value=value, samples=samples, attempts=attempt)

        health.consecutive_failures += 1
        return self._fallback(device, health, attempts, last_error)

    async def _sample(self, plan: CommandPlan, count: int, delay_ms: int) -> Tuple[float, Tuple[float, ...]]:
        values: List[float] = []
        failures: List[TransportError] = []
        for index in range(count):
            try:
                data = await self._execute(plan)
                values.append(extract_value(data, plan.response_mapping, plan.controller_id))
            except TransportError as e:
                failures.append(e)
            if index < count - 1 and delay_ms:
                await self.sleep(delay_ms / 1000.0)
        if not values:
            raise failures[-1]
        if failures:
            logger.debug(f"'{plan.device_id}': {len(failures)} of {count} samples failed; using the rest")
        value = values[0] if len(values) == 1 else float(statistics.median(values))
        return value, tuple(values)

    async def _execute(self, plan: CommandPlan) -> Any:
        result = None
        reading_step = plan.reading_step
        for step in plan.steps:
            data = await self.transports.execute(step)
            if step is reading_step:
                result = data
            if step.delay_ms:
                await self.sleep(step.delay_ms / 1000.0)
        return result

    @staticmethod
    def _check_range(device_id: str, value: float, low: Optional[float], high: Optional[float]) -> None:
        if math.isnan(value):
            raise ValidationFailure(device_id, "reading is NaN")
        if low is not None and value < low:
            raise ValidationFailure(device_id, f"reading {value} is below {low}")
        if high is not None and value > high:
            raise ValidationFailure(device_id, f"reading {value} is above {high}")

    def _fallback(
        self,
        device: DeviceDefinition,
        health: DeviceHealth,
        attempts: int,
        last_error: Optional[HydroflowError],
    ) -> Reading:
        config = device.validation
        action = config.fallback_action
        reason = str(last_error) if last_error else "no valid reading"

        if action == FallbackAction.ERROR:
            raise ValidationFailure(device.id, f"no valid reading after {attempts} attempts: {reason}") from last_error
        if health.consecutive_failures > config.stale_limit:
            raise ValidationFailure(
                device.id,
                f"{health.consecutive_failures} consecutive failures exceed stale_limit={config.stale_limit}; "
                f"refusing '{action.value}' fallback: {reason}",
            ) from last_error

        if action == FallbackAction.SKIP:
            logger.warning(f"'{device.id}': reading skipped after {attempts} attempts")
            return Reading(device_id=device.id, value=None, source=SOURCE_SKIPPED, attempts=attempts, error=reason)

        if health.last_valid_at is None:
            raise ValidationFailure(device.id, f"no previous valid reading to back '{action.value}': {reason}") from last_error
        age_ms = (self.clock() - health.last_valid_at) * 1000.0
        if age_ms > config.stale_timeout_ms:
            raise ValidationFailure(
                device.id,
                f"last valid reading is {age_ms:.0f} ms old (stale_timeout_ms={config.stale_timeout_ms}): {reason}",
            ) from last_error

        if action == FallbackAction.USE_LAST_VALID:
            logger.warning(f"'{device.id}': using last valid reading {health.last_value}")
            return Reading(device_id=device.id, value=health.last_value, source=SOURCE_LAST_VALID, attempts=attempts, error=reason)
        logger.warning(f"'{device.id}': using default value {config.default_value}")
        return Reading(device_id=device.id, value=config.default_value, source=SOURCE_DEFAULT, attempts=attempts, error=reason)
