from pathlib import Path

import yaml
from typer.testing import CliRunner

from flowbuild.validation.cross import CrossValidator
from flowbuild.validation.inventory import InventoryValidator
from tools.flowctl.cli import app


SHIPPED_INVENTORY = Path(__file__).parent.parent / "config_sources" / "system_definition.yaml"


def test_shipped_inventory_validates():
    inventory = InventoryValidator(SHIPPED_INVENTORY).validate()
    assert inventory is not None
    assert CrossValidator(inventory).validate()


def test_missing_file_is_reported(tmp_path: Path, capsys):
    assert InventoryValidator(tmp_path / "absent.yaml").validate() is None
    assert "not found" in capsys.readouterr().out


def test_schema_errors_are_reported(tmp_path: Path, capsys):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump({"devices": [{"id": "x"}]}))
    assert InventoryValidator(path).validate() is None
    assert "Pydantic Validation Failed" in capsys.readouterr().out


def test_port_conflict_is_reported(inventory_factory, capsys):
    devices = [
        {"id": "a", "template": "valve", "binding": {"kind": "direct", "controller_id": "c2", "pins": {"control": "D2"}}},
        {"id": "b", "template": "valve", "binding": {"kind": "direct", "controller_id": "c2", "pins": {"control": "D2"}}},
    ]
    assert not CrossValidator(inventory_factory(devices=devices)).validate()
    out = capsys.readouterr().out
    assert "--- allocation ---" in out
    assert "already used by device 'a'" in out


def test_undefined_references_are_reported(inventory_factory, capsys):
    devices = [
        {"id": "a", "template": "nope", "binding": {"kind": "direct", "controller_id": "c2"}},
        {"id": "b", "template": "valve", "binding": {"kind": "relay", "relay_id": "r9", "channel": 0}},
    ]
    assert not CrossValidator(inventory_factory(devices=devices)).validate()
    out = capsys.readouterr().out
    assert "undefined template 'nope'" in out
    assert "undefined relay 'r9'" in out


def test_broken_flow_is_reported(inventory_factory, capsys):
    flows = [{"id": "f", "blocks": [{"id": "start", "type": "START", "next": "gone"}]}]
    assert not CrossValidator(inventory_factory(flows=flows)).validate()
    assert "--- flows ---" in capsys.readouterr().out


def test_cli_compile_and_ports():
    runner = CliRunner()
    result = runner.invoke(app, ["compile", "tank_ph", "--inventory", str(SHIPPED_INVENTORY)])
    assert result.exit_code == 0, result.output
    assert '"pin": "A0"' in result.output

    result = runner.invoke(app, ["compile", "acid_pump", "--inventory", str(SHIPPED_INVENTORY)])
    assert result.exit_code == 0, result.output
    # active-low relay: OFF is a high line
    assert '"state": 1' in result.output

    result = runner.invoke(app, ["ports", "arduino_1", "--inventory", str(SHIPPED_INVENTORY)])
    assert result.exit_code == 0, result.output
    assert "device:air_dht" in result.output
    assert "relay:relay_board_1" in result.output


def test_cli_run_simulated_flow():
    runner = CliRunner()
    result = runner.invoke(app, [
        "run", "top_up",
        "--inventory", str(SHIPPED_INVENTORY),
        "--reading", "tank_level=12",
    ])
    assert result.exit_code == 0, result.output
    assert "completed" in result.output


def test_cli_run_reports_unreachable_broker(tmp_path: Path):
    raw = yaml.safe_load(SHIPPED_INVENTORY.read_text())
    raw["engine"]["broker"].update({"address": "127.0.0.1", "port": 1})
    inventory = tmp_path / "system_definition.yaml"
    inventory.write_text(yaml.safe_dump(raw))

    result = CliRunner().invoke(app, ["run", "top_up", "--mqtt", "--inventory", str(inventory)])
    assert result.exit_code == 2, result.output
    assert "cannot reach 127.0.0.1:1" in result.output
    assert isinstance(result.exception, SystemExit)
