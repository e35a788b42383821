from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

import typer
import yaml

from flowbuild.run import main as build_main
from shared_libs.config_models.catalog_models import PhysicalType, ResponseMapping
from shared_libs.config_models.secrets import BrokerSecrets
from shared_libs.hardware_core.errors import HydroflowError, TransportError
from shared_libs.hardware_core.topology import port_summary

from control.actuators import line_level
from control.engine import FlowEngine, load_inventory
from control.events import FanOutEventSink, LoggingEventSink, MQTTEventSink
from control.mqtt_transport import MQTTTransport, create_client
from control.transport import SimulatedTransport


DEFAULT_INVENTORY = Path(__file__).resolve().parents[2] / "config_sources" / "system_definition.yaml"

app = typer.Typer(help="flowctl - inspect the hardware inventory and run flows")


def _parse_pairs(pairs: List[str], option: str) -> Dict[str, str]:
	parsed: Dict[str, str] = {}
	for pair in pairs:
		if "=" not in pair:
			typer.secho(f"{option} expects NAME=VALUE, got '{pair}'", fg=typer.colors.RED)
			raise typer.Exit(code=2)
		key, value = pair.split("=", 1)
		parsed[key.strip()] = value.strip()
	return parsed


def _simulated_response(value: float, mapping: Optional[ResponseMapping]):
	"""Wrap a raw reading so it sits where the template's response mapping looks for it."""
	if mapping is None or not mapping.value_path:
		return value
	for part in reversed(mapping.value_path.split(".")):
		value = {part: value}
	return value


def _load_secrets(path: Optional[Path]) -> Optional[BrokerSecrets]:
	if path is None:
		return None
	with path.open("r", encoding="utf-8") as f:
		return BrokerSecrets.model_validate(yaml.safe_load(f) or {})


@app.callback()
def common(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
	logging.basicConfig(
		level=logging.DEBUG if verbose else logging.INFO,
		format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
	)


@app.command("validate")
def validate(inventory: Path = typer.Option(DEFAULT_INVENTORY, "--inventory", help="Inventory YAML file")):
	"""Schema and cross-reference validation of the inventory."""
	build_main(inventory)


@app.command("compile")
def compile_command(
	device_id: str = typer.Argument(..., help="Device to compile"),
	state: Optional[int] = typer.Option(None, "--state", help="Line state for actuators (defaults to OFF)"),
	inventory: Path = typer.Option(DEFAULT_INVENTORY, "--inventory", help="Inventory YAML file"),
):
	"""Print the controller command(s) a device compiles to."""
	try:
		engine = FlowEngine(load_inventory(inventory), SimulatedTransport())
		target = engine.resolve_device(device_id)
		if state is None and target.template.physical_type == PhysicalType.ACTUATOR:
			state = line_level(False, target.binding)
		action = {target.template.execution_config.state_parameter: state} if state is not None else None
		plan = engine.compile_plan(device_id, action)
	except HydroflowError as e:
		typer.secho(str(e), fg=typer.colors.RED)
		raise typer.Exit(code=2)
	print(f"Controller: {plan.controller_id}")
	for step in plan.steps:
		print(json.dumps(step.to_packet()))
		if step.delay_ms:
			print(f"  (then wait {step.delay_ms} ms)")


@app.command("ports")
def ports(
	controller_id: Optional[str] = typer.Argument(None, help="Limit to one controller"),
	inventory: Path = typer.Option(DEFAULT_INVENTORY, "--inventory", help="Inventory YAML file"),
):
	"""Show port and relay channel occupancy."""
	try:
		engine = FlowEngine(load_inventory(inventory), SimulatedTransport())
	except HydroflowError as e:
		typer.secho(str(e), fg=typer.colors.RED)
		raise typer.Exit(code=2)
	for cid in engine.topology.controller_ids():
		if controller_id and cid != controller_id:
			continue
		print(f"{cid}:")
		for port_id, port_type, holder in port_summary(engine.topology.ports(cid)):
			print(f"  {port_id:<6} {port_type:<8} {holder}")
	for relay_id in engine.topology.relay_ids():
		print(f"relay {relay_id}:")
		for channel, holder in engine.topology.channels(relay_id).items():
			print(f"  ch{channel:<4} {'free' if holder is None else f'{holder.kind}:{holder.id}'}")


@app.command("run")
def run_flow(
	flow_id: str = typer.Argument(..., help="Flow to execute"),
	inputs: List[str] = typer.Option([], "--input", help="Global variable value, NAME=VALUE (repeatable)"),
	simulate: bool = typer.Option(True, "--simulate/--mqtt", help="Use the in-process simulator or the MQTT broker"),
	readings: List[str] = typer.Option([], "--reading", help="Raw simulated sensor value, DEVICE=VALUE (repeatable)"),
	secrets_path: Optional[Path] = typer.Option(None, "--secrets", help="YAML file with broker credentials"),
	inventory: Path = typer.Option(DEFAULT_INVENTORY, "--inventory", help="Inventory YAML file"),
	timeout_s: Optional[float] = typer.Option(None, "--timeout", help="Give up waiting after this many seconds"),
):
	"""Load a flow, run it to completion and print the session summary."""
	definition = load_inventory(inventory)
	values = _parse_pairs(inputs, "--input")
	scripted = _parse_pairs(readings, "--reading")

	async def _run() -> int:
		mqtt_transport: Optional[MQTTTransport] = None
		events_client = None
		sink = LoggingEventSink()
		if not simulate and definition.engine.broker is None:
			typer.secho("engine.broker is not configured in the inventory", fg=typer.colors.RED)
			return 2
		try:
			if simulate:
				transport = SimulatedTransport()
			else:
				secrets = _load_secrets(secrets_path)
				mqtt_transport = MQTTTransport(definition.engine.broker, definition.engine.mqtt_topic_prefix, secrets)
				await mqtt_transport.connect()
				events_client = create_client(definition.engine.broker, secrets, client_suffix="-events")
				try:
					events_client.connect(mqtt_transport.address, mqtt_transport.port)
				except OSError as e:
					events_client = None
					raise TransportError("broker", f"events client cannot connect: {e}") from e
				events_client.loop_start()
				sink = FanOutEventSink(sink, MQTTEventSink(events_client, definition.engine.mqtt_topic_prefix))
				transport = mqtt_transport
			engine = FlowEngine(definition, transport, sink)
			if simulate:
				for device_id, value in scripted.items():
					plan = engine.compile_plan(device_id)
					transport.respond(
						plan.reading_step.command,
						_simulated_response(float(value), plan.response_mapping),
						controller_id=plan.controller_id,
					)
			session_id = engine.load_flow(flow_id, values)
			await engine.start(session_id)
			session = await engine.wait(session_id, timeout_s)
		except HydroflowError as e:
			typer.secho(str(e), fg=typer.colors.RED)
			return 2
		finally:
			if events_client is not None:
				events_client.loop_stop()
				events_client.disconnect()
			if mqtt_transport is not None:
				mqtt_transport.disconnect()

		color = typer.colors.GREEN if session.status.value == "completed" else typer.colors.RED
		typer.secho(f"Session {session.id}: {session.status.value} after {session.step_count} steps", fg=color)
		for log in session.logs:
			print(f"  [{log.level}] {log.message}")
		for error in session.errors:
			typer.secho(f"  {error.severity.upper()} {error.block_id or '-'}: {error.message}", fg=typer.colors.RED)
		print(f"  variables: {json.dumps(session.variables, default=str)}")
		return 0 if session.status.value == "completed" else 1

	code = asyncio.run(_run())
	if code:
		raise typer.Exit(code=code)


if __name__ == "__main__":
	app()
