import pytest

from shared_libs.config_models.catalog_models import DeviceTemplate, ParameterType
from shared_libs.hardware_core.compiler import CommandCompiler, parse_port
from shared_libs.hardware_core.errors import CompileError
from shared_libs.hardware_core.topology import ResolvedBinding


def _compile(catalog, topology, device, action=None):
    template = catalog.get_template(device.template)
    return CommandCompiler(catalog).compile(template, topology.resolve(device, template), action)


def _plan(catalog, topology, device, action=None):
    template = catalog.get_template(device.template)
    return CommandCompiler(catalog).compile_plan(template, topology.resolve(device, template), action)


@pytest.mark.parametrize("port_id, command, parameter_type, expected", [
    ("A0", "ANALOG", ParameterType.STRING, "A0"),
    ("D2", "DIGITAL_WRITE", ParameterType.NUMBER, 2),
    ("A3", "DHT_READ", ParameterType.NUMBER, 3),
    ("A0", "ANALOG", ParameterType.NUMBER, 0),
    ("13", "DIGITAL_WRITE", ParameterType.NUMBER, 13),
    ("GPIO5", "DIGITAL_WRITE", ParameterType.NUMBER, "GPIO5"),
])
def test_parse_port(port_id, command, parameter_type, expected):
    assert parse_port(port_id, command, parameter_type) == expected


def test_analog_pin_string_is_sent_verbatim(catalog, bound_topology, device):
    payload = _compile(catalog, bound_topology, device("ph"))
    assert payload.command == "ANALOG"
    assert payload.parameters == {"pin": "A0"}


def test_default_pin_becomes_integer(catalog, bound_topology, device):
    payload = _compile(catalog, bound_topology, device("temp_probe"))
    assert payload.controller_id == "c1"
    assert payload.to_packet() == {"cmd": "DHT_READ", "pin": 4}


def test_roles_map_to_named_parameters_and_defaults_fill_in(catalog, bound_topology, device):
    payload = _compile(catalog, bound_topology, device("level"))
    assert payload.parameters == {"triggerPin": 5, "echoPin": 6, "timeoutUs": 30000}


def test_relay_device_compiles_against_channel_port(catalog, bound_topology, device):
    payload = _compile(catalog, bound_topology, device("pump"), {"state": 1})
    assert payload.controller_id == "c1"
    assert payload.parameters == {"pin": 7, "state": 1}


def test_missing_required_parameter_is_a_compile_error(catalog, bound_topology, device):
    with pytest.raises(CompileError) as excinfo:
        _compile(catalog, bound_topology, device("valve"))
    assert excinfo.value.missing == ["state"]


def test_parameter_bounds_are_checked(catalog, bound_topology, device):
    with pytest.raises(CompileError, match="above"):
        _compile(catalog, bound_topology, device("valve"), {"state": 2})


def test_multi_step_plan_applies_template_parameters(catalog, bound_topology, device):
    plan = _plan(catalog, bound_topology, device("water_temp"))
    convert, read = plan.steps
    assert convert.command == "ONEWIRE_CONVERT"
    assert convert.parameters == {"dataPin": 3}
    assert convert.delay_ms == 750
    assert convert.expect_response is False
    # template parameter overrides the command default of 12
    assert read.parameters == {"dataPin": 3, "resolution": 10}
    assert plan.reading_step is read


def test_single_compile_rejects_multi_step_templates(catalog, bound_topology, device):
    with pytest.raises(CompileError, match="multi_step"):
        _compile(catalog, bound_topology, device("water_temp"))


def test_single_command_plan_has_one_step(catalog, bound_topology, device):
    plan = _plan(catalog, bound_topology, device("temp_probe"))
    assert [s.command for s in plan.steps] == ["DHT_READ"]


def test_unknown_role_is_a_compile_error(catalog):
    template = DeviceTemplate.model_validate({
        "type": "odd",
        "physical_type": "sensor",
        "required_command": "DHT_READ",
        "port_requirements": [{"role": "clock", "type": "digital"}],
    })
    binding = ResolvedBinding(device_id="x", controller_id="c1", pins={"clock": "D2"})
    with pytest.raises(CompileError, match="clock"):
        CommandCompiler(catalog).compile(template, binding)


def test_unknown_command_is_a_compile_error(catalog):
    template = DeviceTemplate.model_validate({
        "type": "ghost",
        "physical_type": "sensor",
        "required_command": "NOPE",
        "port_requirements": [{"role": "data", "type": "digital"}],
    })
    binding = ResolvedBinding(device_id="x", controller_id="c1", pins={"data": "D2"})
    with pytest.raises(CompileError, match="unknown command 'NOPE'"):
        CommandCompiler(catalog).compile(template, binding)


def test_unbound_required_role_is_a_compile_error(catalog):
    template = catalog.get_template("relay_pump")
    binding = ResolvedBinding(device_id="x", controller_id="c1", pins={})
    with pytest.raises(CompileError) as excinfo:
        CommandCompiler(catalog).compile(template, binding, {"state": 0})
    assert excinfo.value.missing == ["pin"]
