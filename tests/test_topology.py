from concurrent.futures import ThreadPoolExecutor

import pytest

from shared_libs.config_models.topology_models import DeviceDefinition
from shared_libs.hardware_core.errors import CompileError, ConflictError, ValidationError
from shared_libs.hardware_core.topology import PortOwner, TopologyStore, port_summary


def _owner(topology, controller_id, port_id):
    owner = topology.owner_of(controller_id, port_id)
    return owner.id if owner else None


def test_port_is_exclusive_between_entities(topology):
    topology.allocate("device_a", "c1", ["D2"])
    with pytest.raises(ConflictError, match="device_a"):
        topology.allocate("device_b", "c1", ["D2"])
    assert _owner(topology, "c1", "D2") == "device_a"


def test_same_entity_can_reassign_its_own_port(topology):
    topology.allocate("device_a", "c1", ["D2"])
    topology.allocate("device_a", "c1", ["D2", "D3"])
    assert _owner(topology, "c1", "D2") == "device_a"
    assert _owner(topology, "c1", "D3") == "device_a"


def test_reallocation_frees_ports_no_longer_requested(topology):
    topology.allocate("device_a", "c1", ["D2"])
    topology.allocate("device_a", "c1", ["D3"])
    assert _owner(topology, "c1", "D2") is None
    topology.allocate("device_b", "c1", ["D2"])


def test_failed_allocation_changes_nothing(topology):
    topology.allocate("device_a", "c1", ["D2"])
    topology.allocate("device_b", "c1", ["D3"])
    with pytest.raises(ConflictError):
        topology.allocate("device_a", "c1", ["D4", "D3"])
    assert _owner(topology, "c1", "D2") == "device_a"
    assert _owner(topology, "c1", "D4") is None


@pytest.mark.parametrize("port_id, message", [("D9", "inactive"), ("D42", "does not exist")])
def test_unknown_and_inactive_ports_are_refused(topology, port_id, message):
    with pytest.raises(ConflictError, match=message):
        topology.allocate("device_a", "c1", [port_id])


def test_unknown_controller_is_refused(topology):
    with pytest.raises(ConflictError, match="c9"):
        topology.allocate("device_a", "c9", ["D2"])


def test_relay_board_owns_its_channel_ports(topology):
    owner = topology.owner_of("c1", "D7")
    assert owner == PortOwner(kind="relay", id="r1", name=None)
    with pytest.raises(ConflictError, match="relay 'r1'"):
        topology.allocate("device_a", "c1", ["D7"])


def test_relay_channel_is_exclusive(topology, catalog, device):
    pump = device("pump")
    topology.bind_device(pump, catalog.get_template(pump.template))
    other = pump.model_copy(update={"id": "pump_2"})
    with pytest.raises(ConflictError, match="Channel 0"):
        topology.bind_device(other, catalog.get_template(other.template))
    assert topology.channels("r1")[0].id == "pump"


def test_moving_a_device_between_controllers_frees_old_ports(topology, catalog, device):
    probe = device("temp_probe")
    template = catalog.get_template(probe.template)
    topology.bind_device(probe, template)
    assert _owner(topology, "c1", "D4") == "temp_probe"

    moved = DeviceDefinition.model_validate({
        "id": "temp_probe",
        "template": "probe",
        "binding": {"kind": "direct", "controller_id": "c2", "pins": {"data": "D3"}},
    })
    topology.bind_device(moved, template)
    assert _owner(topology, "c1", "D4") is None
    assert _owner(topology, "c2", "D3") == "temp_probe"


def test_moving_a_device_from_relay_to_direct_frees_the_channel(topology, catalog, device):
    pump = device("pump")
    template = catalog.get_template(pump.template)
    topology.bind_device(pump, template)
    direct = DeviceDefinition.model_validate({
        **pump.model_dump(),
        "binding": {"kind": "direct", "controller_id": "c2", "pins": {"control": "D3"}},
    })
    topology.bind_device(direct, template)
    assert topology.channels("r1")[0] is None
    assert _owner(topology, "c2", "D3") == "pump"


def test_disabling_and_deleting_release_ports(topology, catalog, device):
    valve = device("valve")
    template = catalog.get_template(valve.template)
    topology.bind_device(valve, template)
    topology.bind_device(valve.model_copy(update={"enabled": False}), template)
    assert _owner(topology, "c2", "D2") is None

    topology.bind_device(valve, template)
    topology.delete_device("valve")
    assert _owner(topology, "c2", "D2") is None


def test_inactive_template_cannot_be_bound(topology, catalog, device):
    valve = device("valve")
    template = catalog.get_template(valve.template).model_copy(update={"is_active": False})
    with pytest.raises(ValidationError, match="inactive template"):
        topology.bind_device(valve, template)


def test_resolve_uses_default_pin_and_skips_power(bound_topology, catalog, device):
    level = device("level")
    binding = bound_topology.resolve(level, catalog.get_template(level.template))
    assert dict(binding.pins) == {"trigger": "D5", "echo": "D6"}
    assert not binding.via_relay


def test_resolve_relay_binding(bound_topology, catalog, device):
    pump = device("pump")
    binding = bound_topology.resolve(pump, catalog.get_template(pump.template))
    assert binding.via_relay
    assert binding.controller_id == "c1"
    assert dict(binding.pins) == {"control": "D7"}
    assert binding.relay_logic.value == "active_low"


def test_resolve_missing_required_role(topology, catalog):
    orphan = DeviceDefinition.model_validate({
        "id": "orphan",
        "template": "valve",
        "binding": {"kind": "direct", "controller_id": "c2"},
    })
    with pytest.raises(CompileError) as excinfo:
        topology.resolve(orphan, catalog.get_template("valve"))
    assert excinfo.value.missing == ["control"]


def test_resolve_refuses_ports_the_device_no_longer_holds(bound_topology, catalog, device):
    probe = device("temp_probe")
    template = catalog.get_template(probe.template)
    bound_topology.delete_device("temp_probe")
    with pytest.raises(ConflictError, match="free"):
        bound_topology.resolve(probe, template)

    bound_topology.allocate("other", "c1", ["D4"])
    with pytest.raises(ConflictError, match="device 'other'"):
        bound_topology.resolve(probe, template)


def test_resolve_refuses_a_relay_channel_held_elsewhere(bound_topology, catalog, device):
    pump = device("pump")
    template = catalog.get_template(pump.template)
    bound_topology.delete_device("pump")
    bound_topology.allocate_channel("pump_2", "r1", 0)
    with pytest.raises(ConflictError, match="channel 0 of relay 'r1'"):
        bound_topology.resolve(pump, template)


def test_relay_on_unknown_controller_is_refused(inventory):
    relay = inventory.relays[0].model_copy(update={"controller_id": "nowhere"})
    with pytest.raises(ConflictError):
        TopologyStore(inventory.controllers, [relay])


def test_concurrent_requests_for_one_port_have_a_single_winner(topology):
    def claim(n):
        try:
            topology.allocate(f"device_{n}", "c1", ["D2"])
            return True
        except ConflictError:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(claim, range(16)))
    assert results.count(True) == 1


def test_port_summary(topology):
    topology.allocate("device_a", "c2", ["D2"])
    assert port_summary(topology.ports("c2")) == [
        ("D2", "digital", "device:device_a"),
        ("D3", "digital", "free"),
    ]
