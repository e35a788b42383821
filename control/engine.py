# control/engine.py

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional

import yaml
from uuid6 import uuid7

from shared_libs.config_models.catalog_models import CapabilityCatalogDefinition, DeviceTemplate
from shared_libs.config_models.flow_models import FlowDefinition
from shared_libs.config_models.inventory_models import EngineSettings, InventoryDefinition
from shared_libs.config_models.topology_models import DeviceDefinition
from shared_libs.flow_core.graph import build_graph
from shared_libs.hardware_core.catalog import CapabilityCatalog
from shared_libs.hardware_core.compiler import CommandCompiler, CommandPayload, CommandPlan
from shared_libs.hardware_core.errors import CompileError, SessionStateError, ValidationError
from shared_libs.hardware_core.topology import PortOwner, TopologyStore

from control import events
from control.actuators import ActuatorSupervisor, DeviceTarget
from control.interpreter import FlowInterpreter
from control.sampling import DeviceHealth, SamplingPipeline
from control.session import ExecutionSession, SessionStatus
from control.transport import Transport, TransportManager
from control.variables import VariableStore

logger = logging.getLogger(__name__)


def load_inventory(path: Path) -> InventoryDefinition:
    with open(path, "r") as f:
        loaded = yaml.safe_load(f) or {}
    return InventoryDefinition(**loaded)


class DeviceDirectory:
    """Resolves device ids against one catalog snapshot and the live topology."""

    def __init__(self, devices: Mapping[str, DeviceDefinition], catalog: CapabilityCatalog, topology: TopologyStore):
        self.devices = devices
        self.catalog = catalog
        self.topology = topology

    def template_for(self, device: DeviceDefinition) -> DeviceTemplate:
        template = self.catalog.get_template(device.template)
        if template is None:
            raise CompileError(device.id, f"unknown template '{device.template}'")
        return template

    def resolve(self, device_id: str) -> DeviceTarget:
        device = self.devices.get(device_id)
        if device is None:
            raise CompileError(device_id, "unknown device")
        if not device.enabled:
            raise CompileError(device_id, "device is disabled")
        template = self.template_for(device)
        return DeviceTarget(device=device, template=template, binding=self.topology.resolve(device, template))


class FlowEngine:
    """Entry point for collaborators: load, drive and inspect flow sessions."""

    def __init__(
        self,
        inventory: InventoryDefinition,
        transport: Transport,
        sink: Optional[events.EventSink] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings: EngineSettings = inventory.engine
        self.sink = events.optional_sink(sink)
        self.clock = clock
        self.sleep = sleep
        self.catalog = CapabilityCatalog.from_definition(inventory.catalog)
        self.topology = TopologyStore(inventory.controllers, inventory.relays)
        self.transports = TransportManager(transport, self.settings.default_timeout_ms)
        self.flows: Dict[str, FlowDefinition] = {f.id: f for f in inventory.flows}
        self.devices: Dict[str, DeviceDefinition] = {}
        self._health: Dict[str, DeviceHealth] = {}
        self._sessions: Dict[str, FlowInterpreter] = {}
        for device in inventory.devices:
            self.upsert_device(device)
        logger.info(
            f"FlowEngine ready: {len(self.catalog.templates)} templates, {len(self.devices)} devices, {len(self.flows)} flows"
        )

    @classmethod
    def from_yaml(cls, path: Path, transport: Transport, sink: Optional[events.EventSink] = None, **kwargs) -> "FlowEngine":
        return cls(load_inventory(path), transport, sink, **kwargs)

    # --- topology and catalog ---

    def upsert_device(self, device: DeviceDefinition) -> None:
        template = self.catalog.get_template(device.template)
        if template is None:
            raise ValidationError(f"Device '{device.id}' uses unknown template '{device.template}'")
        self.topology.bind_device(device, template)
        self.devices[device.id] = device

    def delete_device(self, device_id: str) -> None:
        self.topology.delete_device(device_id)
        self.devices.pop(device_id, None)

    def allocate(self, owner_id: str, controller_id: str, pins: Iterable[str]) -> None:
        self.topology.allocate(PortOwner(kind="device", id=owner_id), controller_id, pins)

    def refresh_catalog(self, definition: CapabilityCatalogDefinition) -> CapabilityCatalog:
        """Swap in a new catalog snapshot; sessions already loaded keep theirs."""
        self.catalog = self.catalog.refreshed(definition.commands, definition.templates)
        return self.catalog

    def _directory(self) -> DeviceDirectory:
        return DeviceDirectory(self.devices, self.catalog, self.topology)

    def resolve_device(self, device_id: str) -> DeviceTarget:
        return self._directory().resolve(device_id)

    def compile_command(self, device_id: str, action_parameters: Optional[Mapping[str, Any]] = None) -> CommandPayload:
        target = self._directory().resolve(device_id)
        return CommandCompiler(self.catalog).compile(target.template, target.binding, action_parameters)

    def compile_plan(self, device_id: str, action_parameters: Optional[Mapping[str, Any]] = None) -> CommandPlan:
        target = self._directory().resolve(device_id)
        return CommandCompiler(self.catalog).compile_plan(target.template, target.binding, action_parameters)

    # --- sessions ---

    def load_flow(self, flow_id: str, inputs: Optional[Mapping[str, Any]] = None) -> str:
        flow = self.flows.get(flow_id)
        if flow is None:
            raise ValidationError(f"Unknown flow '{flow_id}'")
        catalog = self.catalog
        graph = build_graph(flow, self.devices, catalog)
        variables = VariableStore(graph.variables, inputs)
        compiler = CommandCompiler(catalog)
        sampling = SamplingPipeline(compiler, self.transports, self.clock, self.sleep, health=self._health)

        def actuators_factory(on_safety_failure) -> ActuatorSupervisor:
            return ActuatorSupervisor(compiler, self.transports, on_safety_failure, self.sleep)

        session = ExecutionSession(id=str(uuid7()), flow_id=flow_id)
        interpreter = FlowInterpreter(
            session,
            graph,
            variables,
            DeviceDirectory(self.devices, catalog, self.topology),
            sampling,
            actuators_factory,
            self.sink,
            sleep=self.sleep,
            max_steps=self.settings.max_steps,
        )
        interpreter.change_status(SessionStatus.LOADED)
        self._sessions[session.id] = interpreter
        logger.info(f"Loaded flow '{flow_id}' as session {session.id}")
        return session.id

    def _interpreter(self, session_id: str) -> FlowInterpreter:
        interpreter = self._sessions.get(session_id)
        if interpreter is None:
            raise SessionStateError(f"Unknown session '{session_id}'")
        return interpreter

    async def start(self, session_id: str) -> None:
        self._interpreter(session_id).start()

    async def pause(self, session_id: str) -> None:
        self._interpreter(session_id).pause()

    async def resume(self, session_id: str) -> None:
        self._interpreter(session_id).resume()

    async def stop(self, session_id: str) -> None:
        interpreter = self._interpreter(session_id)
        if interpreter.session.status not in (SessionStatus.RUNNING, SessionStatus.PAUSED):
            raise SessionStateError(
                f"Session '{session_id}' cannot be stopped from {interpreter.session.status.value}"
            )
        await interpreter.stop()

    async def wait(self, session_id: str, timeout_s: Optional[float] = None) -> ExecutionSession:
        """Wait for a started session to finish and return its final snapshot."""
        interpreter = self._interpreter(session_id)
        if interpreter.task is None:
            raise SessionStateError(f"Session '{session_id}' has not been started")
        done, _ = await asyncio.wait({interpreter.task}, timeout=timeout_s)
        if not done:
            raise asyncio.TimeoutError(f"Session '{session_id}' still {interpreter.session.status.value} after {timeout_s}s")
        task = interpreter.task
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> ExecutionSession:
        return self._interpreter(session_id).session.snapshot()

    def sessions(self) -> Dict[str, SessionStatus]:
        return {sid: i.session.status for sid, i in self._sessions.items()}
