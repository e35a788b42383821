# control/actuators.py

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from shared_libs.config_models.catalog_models import DeviceTemplate
from shared_libs.config_models.flow_models import ActuatorAction, AmountUnit
from shared_libs.config_models.topology_models import DeviceDefinition, RelayLogic
from shared_libs.hardware_core.compiler import CommandCompiler
from shared_libs.hardware_core.errors import CompileError, HydroflowError, SafetyError
from shared_libs.hardware_core.topology import ResolvedBinding

from control.transport import TransportManager

logger = logging.getLogger(__name__)

ML_PER_UNIT: Dict[AmountUnit, float] = {
    AmountUnit.ML: 1.0,
    AmountUnit.L: 1000.0,
    AmountUnit.GAL: 3785.411784,
}


@dataclass(frozen=True)
class DeviceTarget:
    device: DeviceDefinition
    template: DeviceTemplate
    binding: ResolvedBinding

    @property
    def device_id(self) -> str:
        return self.device.id


def line_level(on: bool, binding: ResolvedBinding) -> int:
    """Logical ON/OFF to the pin level, honouring active-low relay boards."""
    if binding.via_relay and binding.relay_logic == RelayLogic.ACTIVE_LOW:
        return 0 if on else 1
    return 1 if on else 0


def dose_volume_ml(device: DeviceDefinition, amount: float, unit: AmountUnit) -> float:
    if amount <= 0:
        raise CompileError(device.id, f"dose amount must be positive, got {amount}")
    if unit == AmountUnit.DOSES:
        dose_size = device.calibration.dose_size_ml if device.calibration else None
        if not dose_size:
            raise CompileError(device.id, "no calibrated dose_size_ml")
        return amount * dose_size
    return amount * ML_PER_UNIT[unit]


def dose_duration_s(device: DeviceDefinition, amount: float, unit: AmountUnit) -> float:
    """Run time needed to deliver `amount`: volume_ml / flow_rate_ml_per_s."""
    flow_rate = device.calibration.flow_rate_ml_per_s if device.calibration else None
    if not flow_rate:
        raise CompileError(device.id, "no calibrated flow_rate_ml_per_s")
    return dose_volume_ml(device, amount, unit) / flow_rate


class ActuatorSupervisor:
    """Drives actuators for one session and owns their compensating commands.

    Timed actions (PULSE_ON, PULSE_OFF, DOSE) schedule the reverse command as
    a background task, so the flow moves on while the timer runs. A failed
    compensating command is reported through `on_safety_failure`; it is never
    dropped.
    """

    def __init__(
        self,
        compiler: CommandCompiler,
        transports: TransportManager,
        on_safety_failure: Callable[[SafetyError], None],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.compiler = compiler
        self.transports = transports
        self.on_safety_failure = on_safety_failure
        self.sleep = sleep
        self.safety_failures: List[SafetyError] = []
        self._open: Dict[str, DeviceTarget] = {}
        self._no_revert: Set[str] = set()
        self._pending: Dict[str, asyncio.Task] = {}

    @property
    def open_devices(self) -> List[str]:
        return sorted(self._open)

    @property
    def has_pending(self) -> bool:
        return any(not t.done() for t in self._pending.values())

    async def switch(self, target: DeviceTarget, on: bool) -> None:
        level = line_level(on, target.binding)
        state_parameter = target.template.execution_config.state_parameter
        plan = self.compiler.compile_plan(target.template, target.binding, {state_parameter: level})
        for step in plan.steps:
            await self.transports.execute(step)
            if step.delay_ms:
                await self.sleep(step.delay_ms / 1000.0)
        if on:
            self._open[target.device_id] = target
        else:
            self._open.pop(target.device_id, None)
        logger.info(f"Actuator '{target.device_id}' switched {'ON' if on else 'OFF'} (level={level})")

    async def apply(
        self,
        target: DeviceTarget,
        action: ActuatorAction,
        *,
        duration_s: Optional[float] = None,
        revert_on_stop: bool = True,
    ) -> Optional[float]:
        """Perform an ACTUATOR_SET action; returns the scheduled compensation delay, if any."""
        self._cancel_pending(target.device_id)
        if revert_on_stop:
            self._no_revert.discard(target.device_id)
        else:
            self._no_revert.add(target.device_id)

        if action == ActuatorAction.ON:
            await self.switch(target, True)
            return None
        if action == ActuatorAction.OFF:
            await self.switch(target, False)
            return None
        if duration_s is None or duration_s < 0:
            raise CompileError(target.device_id, f"{action.value} needs a non-negative duration")

        restore_on = action == ActuatorAction.PULSE_OFF
        await self.switch(target, not restore_on)
        self._pending[target.device_id] = asyncio.create_task(
            self._compensate(target, restore_on, duration_s),
            name=f"compensate-{target.device_id}",
        )
        logger.info(
            f"Actuator '{target.device_id}' {action.value}: switching {'ON' if restore_on else 'OFF'} in {duration_s:.3f}s"
        )
        return duration_s

    async def _compensate(self, target: DeviceTarget, on: bool, delay_s: float) -> None:
        await self.sleep(delay_s)
        try:
            await self.switch(target, on)
        except HydroflowError as e:
            self._escalate(SafetyError(target.device_id, f"compensating {'ON' if on else 'OFF'} failed: {e}"))

    def _escalate(self, error: SafetyError) -> None:
        logger.critical(str(error))
        self.safety_failures.append(error)
        self.on_safety_failure(error)

    def _cancel_pending(self, device_id: str) -> None:
        task = self._pending.pop(device_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def wait_pending(self) -> None:
        """Block until every scheduled compensating command has run."""
        # asyncio.wait leaves the tasks running if this waiter is cancelled.
        tasks = [t for t in self._pending.values() if not t.done()]
        if tasks:
            await asyncio.wait(tasks)

    async def revert_all(self) -> List[SafetyError]:
        """Cancel timers and switch every open actuator OFF, best effort.

        Devices whose last action opted out of revert_on_stop are left alone.
        """
        for device_id in list(self._pending):
            self._cancel_pending(device_id)
        failures: List[SafetyError] = []
        for device_id, target in list(self._open.items()):
            if device_id in self._no_revert:
                continue
            try:
                await self.switch(target, False)
            except HydroflowError as e:
                error = SafetyError(device_id, f"OFF on stop failed: {e}")
                failures.append(error)
                self._escalate(error)
        return failures
