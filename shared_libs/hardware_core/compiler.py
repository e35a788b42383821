from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from shared_libs.config_models.catalog_models import (
	CommandDefinition,
	DeviceTemplate,
	ExecutionStrategy,
	ParameterType,
	ResponseMapping,
)

from .catalog import CapabilityCatalog
from .errors import CompileError
from .topology import POWER_ROLE, ResolvedBinding


logger = logging.getLogger(__name__)

ROLE_PARAMETERS: Mapping[str, str] = {
	"trigger": "triggerPin",
	"echo": "echoPin",
	"control": "pin",
	"rx": "rxPin",
	"tx": "txPin",
}
DATA_ROLE = "data"
ANALOG_COMMAND = "ANALOG"

_PORT_TOKEN = re.compile(r"^[DA](\d+)$")
_DIGITS = re.compile(r"^\d+$")


@dataclass(frozen=True)
class CommandPayload:
	device_id: str
	controller_id: str
	command: str
	parameters: Mapping[str, Any]
	timeout_ms: int
	delay_ms: int = 0
	expect_response: bool = True

	def to_packet(self) -> Dict[str, Any]:
		return {"cmd": self.command, **dict(self.parameters)}


@dataclass(frozen=True)
class CommandPlan:
	"""Ordered commands that together perform one device operation."""
	device_id: str
	controller_id: str
	steps: Tuple[CommandPayload, ...]
	response_mapping: Optional[ResponseMapping] = None

	@property
	def reading_step(self) -> CommandPayload:
		# The last step expecting a response carries the value.
		expecting = [s for s in self.steps if s.expect_response]
		return expecting[-1] if expecting else self.steps[-1]


def parse_port(port_id: str, command: str, parameter_type: Optional[ParameterType]) -> Any:
	"""'D2' -> 2, 'A0' -> 0, except ANALOG string parameters which keep 'A0'."""
	if command == ANALOG_COMMAND and parameter_type == ParameterType.STRING:
		return port_id
	match = _PORT_TOKEN.match(port_id)
	if match:
		return int(match.group(1))
	if _DIGITS.match(port_id):
		return int(port_id)
	return port_id


def role_parameter(role: str, schema: CommandDefinition) -> Optional[str]:
	"""Parameter name a port role feeds; None for roles that are never sent."""
	if role == POWER_ROLE:
		return None
	if role == DATA_ROLE:
		return "dataPin" if schema.has_parameter("dataPin") else "pin"
	return ROLE_PARAMETERS.get(role)


class CommandCompiler:
	"""Pure translation of (template, resolved binding) into controller commands.

	Never touches the topology store or a transport.
	"""

	def __init__(self, catalog: CapabilityCatalog):
		self.catalog = catalog

	def compile(
		self,
		template: DeviceTemplate,
		binding: ResolvedBinding,
		action_parameters: Optional[Mapping[str, Any]] = None,
	) -> CommandPayload:
		"""Compile a single-command template. multi_step templates go through compile_plan."""
		if template.execution_config.strategy == ExecutionStrategy.MULTI_STEP:
			raise CompileError(binding.device_id, f"template '{template.type}' is multi_step; compile a plan instead")
		command = template.command_name
		schema = self._schema(binding.device_id, command)
		parameters = self._pin_parameters(template, binding, schema, strict=True)
		self._apply_defaults(parameters, schema)
		parameters.update(template.execution_config.parameters)
		parameters.update(action_parameters or {})
		self._check(binding.device_id, schema, parameters)
		return CommandPayload(
			device_id=binding.device_id,
			controller_id=binding.controller_id,
			command=schema.name,
			parameters=parameters,
			timeout_ms=template.execution_config.timeout_ms,
		)

	def compile_plan(
		self,
		template: DeviceTemplate,
		binding: ResolvedBinding,
		action_parameters: Optional[Mapping[str, Any]] = None,
	) -> CommandPlan:
		config = template.execution_config
		if config.strategy != ExecutionStrategy.MULTI_STEP:
			steps: Tuple[CommandPayload, ...] = (self.compile(template, binding, action_parameters),)
		else:
			compiled: List[CommandPayload] = []
			for step in config.command_sequence:
				schema = self._schema(binding.device_id, step.command)
				parameters = self._pin_parameters(template, binding, schema, strict=False)
				self._apply_defaults(parameters, schema)
				parameters.update({k: v for k, v in config.parameters.items() if schema.has_parameter(k)})
				parameters.update(step.parameters)
				parameters.update({k: v for k, v in (action_parameters or {}).items() if schema.has_parameter(k)})
				self._check(binding.device_id, schema, parameters)
				compiled.append(CommandPayload(
					device_id=binding.device_id,
					controller_id=binding.controller_id,
					command=schema.name,
					parameters=parameters,
					timeout_ms=config.timeout_ms,
					delay_ms=step.delay_ms,
					expect_response=step.expect_response,
				))
			steps = tuple(compiled)
		logger.debug(f"Compiled {[s.command for s in steps]} for device '{binding.device_id}'")
		return CommandPlan(
			device_id=binding.device_id,
			controller_id=binding.controller_id,
			steps=steps,
			response_mapping=config.response_mapping,
		)

	def _schema(self, device_id: str, command: Optional[str]) -> CommandDefinition:
		if not command:
			raise CompileError(device_id, "template names no command")
		schema = self.catalog.get_command(command)
		if schema is None:
			raise CompileError(device_id, f"unknown command '{command}'")
		return schema

	@staticmethod
	def _pin_parameters(
		template: DeviceTemplate,
		binding: ResolvedBinding,
		schema: CommandDefinition,
		*,
		strict: bool,
	) -> Dict[str, Any]:
		parameters: Dict[str, Any] = {}
		for requirement in template.port_requirements:
			if not requirement.required or requirement.role == POWER_ROLE:
				continue
			if requirement.role != DATA_ROLE and requirement.role not in ROLE_PARAMETERS:
				raise CompileError(binding.device_id, f"no parameter mapping for port role '{requirement.role}'")
			name = role_parameter(requirement.role, schema)
			parameter = schema.get_parameter(name)
			if parameter is None:
				if strict:
					raise CompileError(
						binding.device_id,
						f"command '{schema.name}' has no parameter '{name}' for role '{requirement.role}'",
					)
				continue
			port_id = binding.pins.get(requirement.role)
			if port_id is None:
				raise CompileError(binding.device_id, f"role '{requirement.role}' is not bound", missing=[name])
			parameters[name] = parse_port(port_id, schema.name, parameter.type)
		return parameters

	@staticmethod
	def _apply_defaults(parameters: Dict[str, Any], schema: CommandDefinition) -> None:
		for parameter in schema.parameters:
			if parameter.name not in parameters and parameter.default is not None:
				parameters[parameter.name] = parameter.default

	@staticmethod
	def _check(device_id: str, schema: CommandDefinition, parameters: Mapping[str, Any]) -> None:
		missing = [p.name for p in schema.parameters if p.required and parameters.get(p.name) is None]
		if missing:
			raise CompileError(
				device_id,
				f"command '{schema.name}' is missing required parameters {missing}",
				missing=missing,
			)
		for parameter in schema.parameters:
			value = parameters.get(parameter.name)
			if parameter.type != ParameterType.NUMBER or isinstance(value, bool) or not isinstance(value, (int, float)):
				continue
			if parameter.min is not None and value < parameter.min:
				raise CompileError(device_id, f"parameter '{parameter.name}'={value} is below {parameter.min}")
			if parameter.max is not None and value > parameter.max:
				raise CompileError(device_id, f"parameter '{parameter.name}'={value} is above {parameter.max}")
