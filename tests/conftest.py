import asyncio
import copy

import pytest

from shared_libs.config_models.inventory_models import InventoryDefinition
from shared_libs.hardware_core.catalog import CapabilityCatalog
from shared_libs.hardware_core.topology import TopologyStore

from control.events import RecordingEventSink
from control.transport import SimulatedTransport


COMMANDS = [
    {"name": "DHT_READ", "parameters": [
        {"name": "pin", "type": "number", "required": True},
    ]},
    {"name": "ANALOG", "parameters": [
        {"name": "pin", "type": "string", "required": True},
    ]},
    {"name": "DIGITAL_WRITE", "parameters": [
        {"name": "pin", "type": "number", "required": True},
        {"name": "state", "type": "number", "required": True, "min": 0, "max": 1},
    ]},
    {"name": "ULTRASONIC_TRIG_ECHO", "parameters": [
        {"name": "triggerPin", "type": "number", "required": True},
        {"name": "echoPin", "type": "number", "required": True},
        {"name": "timeoutUs", "type": "number", "default": 30000},
    ]},
    {"name": "ONEWIRE_CONVERT", "parameters": [
        {"name": "dataPin", "type": "number", "required": True},
    ]},
    {"name": "ONEWIRE_READ_TEMP", "parameters": [
        {"name": "dataPin", "type": "number", "required": True},
        {"name": "resolution", "type": "number", "default": 12, "min": 9, "max": 12},
    ]},
]

TEMPLATES = [
    {
        "type": "probe",
        "physical_type": "sensor",
        "required_command": "DHT_READ",
        "port_requirements": [{"role": "data", "type": "digital", "default_pin": "D4"}],
    },
    {
        "type": "ph_probe",
        "physical_type": "sensor",
        "required_command": "ANALOG",
        "port_requirements": [{"role": "data", "type": "analog", "default_pin": "A0"}],
        "limits": {"min_value": 0, "max_value": 14},
    },
    {
        "type": "ultrasonic",
        "physical_type": "sensor",
        "required_command": "ULTRASONIC_TRIG_ECHO",
        "port_requirements": [
            {"role": "trigger", "type": "digital"},
            {"role": "echo", "type": "digital"},
            {"role": "power", "type": "digital", "required": False},
        ],
        "execution_config": {"response_mapping": {"value_path": "distance_cm"}},
    },
    {
        "type": "ds18b20",
        "physical_type": "sensor",
        "port_requirements": [{"role": "data", "type": "digital", "default_pin": "D3"}],
        "execution_config": {
            "strategy": "multi_step",
            "command_sequence": [
                {"command": "ONEWIRE_CONVERT", "delay_ms": 750, "expect_response": False},
                {"command": "ONEWIRE_READ_TEMP"},
            ],
            "parameters": {"resolution": 10},
        },
    },
    {
        "type": "relay_pump",
        "physical_type": "actuator",
        "required_command": "DIGITAL_WRITE",
        "port_requirements": [{"role": "control", "type": "digital"}],
    },
    {
        "type": "valve",
        "physical_type": "actuator",
        "required_command": "DIGITAL_WRITE",
        "port_requirements": [{"role": "control", "type": "digital"}],
    },
]

CONTROLLERS = [
    {
        "id": "c1",
        "ports": [{"id": f"D{n}", "type": "digital"} for n in range(2, 9)]
        + [{"id": "D9", "type": "digital", "is_active": False}]
        + [{"id": "A0", "type": "analog"}, {"id": "A1", "type": "analog"}],
    },
    {
        "id": "c2",
        "ports": [{"id": "D2", "type": "digital"}, {"id": "D3", "type": "digital"}],
    },
]

RELAYS = [
    {
        "id": "r1",
        "controller_id": "c1",
        "logic": "active_low",
        "channels": [
            {"channel_index": 0, "controller_port_id": "D7"},
            {"channel_index": 1, "controller_port_id": "D8"},
        ],
    },
]

DEVICES = [
    {"id": "temp_probe", "template": "probe", "binding": {"kind": "direct", "controller_id": "c1"}},
    {"id": "ph", "template": "ph_probe", "binding": {"kind": "direct", "controller_id": "c1"},
     "validation": {"retry_count": 0, "retry_delay_ms": 0}},
    {"id": "level", "template": "ultrasonic",
     "binding": {"kind": "direct", "controller_id": "c1", "pins": {"trigger": "D5", "echo": "D6"}}},
    {"id": "water_temp", "template": "ds18b20", "binding": {"kind": "direct", "controller_id": "c1"}},
    {"id": "pump", "template": "relay_pump", "binding": {"kind": "relay", "relay_id": "r1", "channel": 0},
     "calibration": {"flow_rate_ml_per_s": 1.0, "dose_size_ml": 5.0}, "display_unit": "ml"},
    {"id": "valve", "template": "valve",
     "binding": {"kind": "direct", "controller_id": "c2", "pins": {"control": "D2"}}},
]


def make_inventory(devices=None, flows=None, engine=None, templates=None) -> InventoryDefinition:
    data = {
        "catalog": {"commands": COMMANDS, "templates": templates if templates is not None else TEMPLATES},
        "controllers": CONTROLLERS,
        "relays": RELAYS,
        "devices": devices if devices is not None else DEVICES,
        "flows": flows or [],
    }
    if engine is not None:
        data["engine"] = engine
    return InventoryDefinition.model_validate(copy.deepcopy(data))


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays, advances the fake clock and yields once."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def inventory_factory():
    return make_inventory


@pytest.fixture
def inventory():
    return make_inventory()


@pytest.fixture
def catalog(inventory):
    return CapabilityCatalog.from_definition(inventory.catalog)


@pytest.fixture
def topology(inventory):
    return TopologyStore(inventory.controllers, inventory.relays)


@pytest.fixture
def bound_topology(topology, inventory, catalog):
    """Topology with every inventory device holding its ports."""
    for d in inventory.devices:
        topology.bind_device(d, catalog.get_template(d.template))
    return topology


@pytest.fixture
def device(inventory):
    by_id = {d.id: d for d in inventory.devices}
    return lambda device_id: by_id[device_id]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep(clock):
    return FakeSleep(clock)


@pytest.fixture
def transport():
    return SimulatedTransport()


@pytest.fixture
def sink():
    return RecordingEventSink()
