# control/interpreter.py

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from shared_libs.config_models.flow_models import (
    ActuatorAction,
    ActuatorSetBlock,
    ConditionBlock,
    ConditionSpec,
    ControlType,
    FlowControlBlock,
    LogBlock,
    LoopBlock,
    LoopMode,
    OnFailure,
    SensorReadBlock,
    WaitBlock,
)
from shared_libs.flow_core.graph import ExecNode, ExecutionGraph
from shared_libs.hardware_core.errors import (
    CompileError,
    HydroflowError,
    RunawayGuardError,
    SafetyError,
    TransportError,
    ValidationError,
    ValidationFailure,
)

from control import events
from control.actuators import ActuatorSupervisor, DeviceTarget, dose_duration_s
from control.conditions import as_number, compare
from control.sampling import SamplingPipeline
from control.session import ExecutionSession, SessionError, SessionLog, SessionStatus
from control.variables import VariableStore

logger = logging.getLogger(__name__)

# Failures worth another attempt under a block's retry policy.
RETRYABLE = (TransportError, ValidationFailure)


class DeviceResolver(Protocol):
    def resolve(self, device_id: str) -> DeviceTarget:
        ...


@dataclass
class LoopState:
    iteration: int = 0
    count: Optional[int] = None


class _Abort(Exception):
    """Internal: the session must end as failed."""


class FlowInterpreter:
    """Walks one session's execution graph, one block at a time."""

    def __init__(
        self,
        session: ExecutionSession,
        graph: ExecutionGraph,
        variables: VariableStore,
        devices: DeviceResolver,
        sampling: SamplingPipeline,
        actuators_factory: Callable[[Callable[[SafetyError], None]], ActuatorSupervisor],
        sink: events.EventSink,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_steps: int = 10000,
    ):
        self.session = session
        self.graph = graph
        self.variables = variables
        self.devices = devices
        self.sampling = sampling
        self.sink = sink
        self.sleep = sleep
        self.max_steps = max_steps
        self.actuators = actuators_factory(self._on_safety_failure)
        self._loops: Dict[int, LoopState] = {}
        self._resume = asyncio.Event()
        self._resume.set()
        self._task: Optional[asyncio.Task] = None
        self._safety_failed = False
        self._stopping = False

    # --- lifecycle hooks used by the engine ---

    def change_status(self, new_status: SessionStatus) -> None:
        previous = self.session.transition(new_status)
        self.session.variables = self.variables.snapshot()
        self._emit(events.STATE_CHANGE, {"from": previous.value, "to": new_status.value})
        logger.info(f"Session '{self.session.id}': {previous.value} -> {new_status.value}")

    def start(self) -> asyncio.Task:
        self.change_status(SessionStatus.RUNNING)
        self._task = asyncio.create_task(self.run(), name=f"session-{self.session.id}")
        return self._task

    def pause(self) -> None:
        self.change_status(SessionStatus.PAUSED)
        self._resume.clear()

    def resume(self) -> None:
        self.change_status(SessionStatus.RUNNING)
        self._resume.set()

    async def stop(self) -> None:
        """Cancel the in-flight block, revert open actuators and end as stopped."""
        self._stopping = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self.session.is_terminal:
            return
        await self.actuators.revert_all()
        self.change_status(SessionStatus.STOPPED)

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    # --- main loop ---

    async def run(self) -> None:
        index: Optional[int] = self.graph.start_index
        try:
            while index is not None:
                await self._resume.wait()
                if self._safety_failed:
                    raise _Abort()
                node = self.graph.nodes[index]
                self.session.current_block_id = node.block_id
                self.session.step_count += 1
                if self.session.step_count > self.max_steps:
                    self._record_error(node, "StepLimitExceeded", f"exceeded max_steps={self.max_steps}", "critical")
                    raise _Abort()
                self._emit(events.BLOCK_START, {"block_id": node.block_id, "type": node.type})
                index = await self._execute_with_policy(node)
                self.session.variables = self.variables.snapshot()
                self._emit(events.BLOCK_END, {
                    "block_id": node.block_id,
                    "next_block_id": self.graph.nodes[index].block_id if index is not None else None,
                })
            await self._resume.wait()
            if self._safety_failed:
                raise _Abort()
            self.change_status(SessionStatus.COMPLETED)
        except _Abort:
            self.change_status(SessionStatus.FAILED)
        except asyncio.CancelledError:
            if self._stopping or not self._safety_failed:
                raise
            self.change_status(SessionStatus.FAILED)
        except Exception as e:
            logger.error(f"Session '{self.session.id}' crashed in block '{self.session.current_block_id}': {e}", exc_info=True)
            self.session.errors.append(SessionError(
                block_id=self.session.current_block_id,
                error_type=type(e).__name__,
                message=str(e),
                severity="critical",
            ))
            self.change_status(SessionStatus.FAILED)

    async def _execute_with_policy(self, node: ExecNode) -> Optional[int]:
        policy = node.block.on_error
        attempts = policy.retry_count + 1
        error: Optional[HydroflowError] = None
        attempt = 0
        while attempt < attempts:
            attempt += 1
            try:
                return await self._execute(node)
            except RETRYABLE as e:
                error = e
                logger.warning(f"Block '{node.block_id}' failed (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts and policy.retry_delay_ms:
                    await self.sleep(policy.retry_delay_ms / 1000.0)
            except HydroflowError as e:
                error = e
                break

        self._record_error(node, type(error).__name__, str(error), attempts=attempt)
        if policy.error_notification:
            self._log("error", f"Block '{node.block_id}' failed: {error}", node.block_id)
        if policy.on_failure == OnFailure.CONTINUE:
            fallthrough = node.next_index if node.next_index is not None else node.false_index
            if fallthrough is not None:
                return fallthrough
        elif policy.on_failure == OnFailure.GOTO:
            return node.recovery_index
        raise _Abort()

    async def _execute(self, node: ExecNode) -> Optional[int]:
        block = node.block
        if node.type == "START":
            return node.next_index
        if node.type == "END":
            await self.actuators.wait_pending()
            return None
        if isinstance(block, LogBlock):
            self._log(block.params.level.value, self.variables.render(block.params.message), node.block_id)
            return node.next_index
        if isinstance(block, WaitBlock):
            await self.sleep(self._milliseconds(block.params.duration, node.block_id) / 1000.0)
            return node.next_index
        if isinstance(block, SensorReadBlock):
            await self._sensor_read(node, block)
            return node.next_index
        if isinstance(block, ActuatorSetBlock):
            await self._actuator_set(node, block)
            return node.next_index
        if isinstance(block, ConditionBlock):
            result = self._evaluate(block.params)
            logger.debug(f"Condition '{node.block_id}' -> {result}")
            return node.true_index if result else node.false_index
        if isinstance(block, LoopBlock):
            return self._loop(node, block)
        if isinstance(block, FlowControlBlock):
            return self._flow_control(node, block)
        raise ValidationError(f"Block '{node.block_id}' has unsupported type {node.type}")

    # --- block semantics ---

    async def _sensor_read(self, node: ExecNode, block: SensorReadBlock) -> None:
        target = self.devices.resolve(block.params.device_id)
        reading = await self.sampling.read(
            target.device,
            target.template,
            target.binding,
            sample_count=block.params.sample_count,
            sample_delay_ms=block.params.sample_delay_ms,
        )
        if reading.skipped:
            self._log("warning", f"Reading of '{reading.device_id}' skipped: {reading.error}", node.block_id)
            return
        if reading.source != "measured":
            self._log("warning", f"'{reading.device_id}' reported {reading.value} from {reading.source}: {reading.error}", node.block_id)
        self.variables.set(block.params.variable, reading.value)

    async def _actuator_set(self, node: ExecNode, block: ActuatorSetBlock) -> None:
        params = block.params
        target = self.devices.resolve(params.device_id)
        duration_s: Optional[float] = None
        if params.action in (ActuatorAction.PULSE_ON, ActuatorAction.PULSE_OFF):
            duration_s = self._milliseconds(params.duration_ms, node.block_id) / 1000.0
        elif params.action == ActuatorAction.DOSE:
            amount = as_number(self.variables.resolve(params.amount))
            if amount is None:
                raise CompileError(params.device_id, f"dose amount {params.amount!r} is not a number")
            duration_s = dose_duration_s(target.device, amount, params.amount_unit)
        await self.actuators.apply(target, params.action, duration_s=duration_s, revert_on_stop=params.revert_on_stop)

    def _evaluate(self, condition: ConditionSpec) -> bool:
        left = self.variables.resolve_operand(condition.variable)
        right = self.variables.resolve(condition.value)
        tolerance = self.variables.tolerance_for(condition.variable, condition.value)
        return compare(left, condition.operator, right, tolerance)

    def _loop(self, node: ExecNode, block: LoopBlock) -> Optional[int]:
        params = block.params
        state = self._loops.get(node.index)
        if params.mode == LoopMode.COUNT:
            if state is None:
                count = as_number(self.variables.resolve(params.count))
                if count is None:
                    raise ValidationError(f"LOOP '{node.block_id}' count {params.count!r} is not a number")
                state = self._loops[node.index] = LoopState(count=max(0, int(count)))
            if state.iteration < state.count:
                state.iteration += 1
                return node.body_index
            self._reset_loop(node.index)
            return node.next_index

        if state is None:
            state = self._loops[node.index] = LoopState()
        if not self._evaluate(params.condition):
            self._reset_loop(node.index)
            return node.next_index
        if state.iteration >= params.max_iterations:
            self._reset_loop(node.index)
            raise RunawayGuardError(node.block_id, params.max_iterations)
        state.iteration += 1
        return node.body_index

    def _flow_control(self, node: ExecNode, block: FlowControlBlock) -> Optional[int]:
        control = block.params.control
        if control == ControlType.LABEL:
            return node.next_index
        if control in (ControlType.LOOP_BACK, ControlType.LOOP_BREAK):
            self._reset_loop(node.loop_index)
        return node.jump_index

    def _reset_loop(self, loop_index: int) -> None:
        """Forget a loop's counters, and those of loops nested in its body."""
        self._loops.pop(loop_index, None)
        for nested in self.graph.loop_bodies.get(loop_index, ()):
            self._loops.pop(nested, None)

    def _milliseconds(self, value: Any, block_id: str) -> float:
        number = as_number(self.variables.resolve(value))
        if number is None or number < 0:
            raise ValidationError(f"Block '{block_id}' duration {value!r} is not a non-negative number")
        return number

    # --- bookkeeping ---

    def _on_safety_failure(self, error: SafetyError) -> None:
        self.session.errors.append(SessionError(
            block_id=None,
            error_type=type(error).__name__,
            message=str(error),
            severity="critical",
        ))
        self._log("critical", str(error), None)
        if self._stopping or self.session.is_terminal:
            return
        self._safety_failed = True
        self._resume.set()
        if self._task is not None and not self._task.done() and asyncio.current_task() is not self._task:
            self._task.cancel()

    def _record_error(self, node: ExecNode, error_type: str, message: str, severity: str = "error", attempts: int = 1) -> None:
        self.session.errors.append(SessionError(
            block_id=node.block_id,
            error_type=error_type,
            message=message,
            severity=severity,
            attempts=attempts,
        ))

    def _log(self, level: str, message: str, block_id: Optional[str]) -> None:
        self.session.logs.append(SessionLog(level=level, message=message, block_id=block_id))
        self._emit(events.LOG, {"level": level, "message": message, "block_id": block_id})

    def _emit(self, kind: str, payload: Dict[str, Any]) -> None:
        self.sink.emit(events.FlowEvent(kind=kind, session_id=self.session.id, payload=payload))
