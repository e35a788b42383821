from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from shared_libs.config_models.catalog_models import DeviceTemplate
from shared_libs.config_models.topology_models import (
	ControllerDefinition,
	DeviceDefinition,
	DirectBinding,
	RelayBinding,
	RelayBoardDefinition,
	RelayLogic,
)

from .errors import CompileError, ConflictError, ValidationError


logger = logging.getLogger(__name__)

# Physical wiring only; never allocated and never sent to a controller.
POWER_ROLE = "power"


@dataclass(frozen=True)
class PortOwner:
	kind: str  # "device" | "relay"
	id: str
	name: Optional[str] = None


@dataclass
class PortState:
	port_id: str
	port_type: str
	is_active: bool
	occupied_by: Optional[PortOwner] = None


@dataclass(frozen=True)
class ResolvedBinding:
	"""Where a device physically lives, as consumed by the command compiler."""
	device_id: str
	controller_id: str
	pins: Mapping[str, str] = field(default_factory=dict)
	relay_id: Optional[str] = None
	channel: Optional[int] = None
	relay_logic: RelayLogic = RelayLogic.ACTIVE_HIGH

	@property
	def via_relay(self) -> bool:
		return self.relay_id is not None


@dataclass
class _RelayState:
	definition: RelayBoardDefinition
	channels: Dict[int, Optional[PortOwner]]


class TopologyStore:
	"""Sole writer of controller port and relay channel occupancy.

	Check-then-reserve runs inside one lock per controller (and one per relay),
	so two allocations against the same board never interleave.
	"""

	def __init__(self, controllers: Iterable[ControllerDefinition] = (), relays: Iterable[RelayBoardDefinition] = ()):
		self._ports: Dict[str, Dict[str, PortState]] = {}
		self._controller_locks: Dict[str, threading.Lock] = {}
		self._relays: Dict[str, _RelayState] = {}
		self._relay_locks: Dict[str, threading.Lock] = {}
		for controller in controllers:
			self.add_controller(controller)
		for relay in relays:
			self.add_relay(relay)

	# --- registration ---

	def add_controller(self, controller: ControllerDefinition) -> None:
		if controller.id in self._ports:
			raise ConflictError(f"Controller '{controller.id}' is already registered")
		self._ports[controller.id] = {
			p.id: PortState(port_id=p.id, port_type=p.type.value, is_active=p.is_active)
			for p in controller.ports
		}
		self._controller_locks[controller.id] = threading.Lock()

	def add_relay(self, relay: RelayBoardDefinition) -> None:
		if relay.id in self._relays:
			raise ConflictError(f"Relay '{relay.id}' is already registered")
		owner = PortOwner(kind="relay", id=relay.id, name=relay.name)
		self.allocate(owner, relay.controller_id, [c.controller_port_id for c in relay.channels])
		self._relays[relay.id] = _RelayState(
			definition=relay,
			channels={c.channel_index: None for c in relay.channels},
		)
		self._relay_locks[relay.id] = threading.Lock()

	# --- allocation ---

	def allocate(self, owner: PortOwner | str, controller_id: str, pins: Iterable[str]) -> None:
		"""Give `owner` exactly `pins` on `controller_id`.

		Ports the owner held on this controller and no longer requests are freed.
		Raises ConflictError without changing anything if any pin is unknown,
		inactive or held by another owner.
		"""
		owner = self._as_owner(owner)
		requested = list(dict.fromkeys(pins))
		lock = self._controller_lock(controller_id)
		with lock:
			ports = self._ports[controller_id]
			for port_id in requested:
				state = ports.get(port_id)
				if state is None:
					raise ConflictError(f"Port '{port_id}' does not exist on controller '{controller_id}'")
				if not state.is_active:
					raise ConflictError(f"Port '{port_id}' on controller '{controller_id}' is inactive")
				if state.occupied_by is not None and not self._same_owner(state.occupied_by, owner):
					raise ConflictError(
						f"Port '{port_id}' on controller '{controller_id}' is already used by "
						f"{state.occupied_by.kind} '{state.occupied_by.id}'"
					)
			for state in ports.values():
				if state.port_id in requested:
					state.occupied_by = owner
				elif state.occupied_by is not None and self._same_owner(state.occupied_by, owner):
					state.occupied_by = None
		logger.debug(f"Allocated {requested} on '{controller_id}' to {owner.kind} '{owner.id}'")

	def allocate_channel(self, owner: PortOwner | str, relay_id: str, channel_index: int) -> None:
		"""Give `owner` one relay channel, freeing any other channel it held on that relay."""
		owner = self._as_owner(owner)
		relay = self._relays.get(relay_id)
		if relay is None:
			raise ConflictError(f"Relay '{relay_id}' does not exist")
		with self._relay_locks[relay_id]:
			if channel_index not in relay.channels:
				raise ConflictError(f"Relay '{relay_id}' has no channel {channel_index}")
			current = relay.channels[channel_index]
			if current is not None and not self._same_owner(current, owner):
				raise ConflictError(
					f"Channel {channel_index} of relay '{relay_id}' is already used by {current.kind} '{current.id}'"
				)
			for index, holder in relay.channels.items():
				if index == channel_index:
					relay.channels[index] = owner
				elif holder is not None and self._same_owner(holder, owner):
					relay.channels[index] = None
		logger.debug(f"Allocated channel {channel_index} of relay '{relay_id}' to {owner.kind} '{owner.id}'")

	def release(self, owner: PortOwner | str) -> None:
		"""Free every port and channel held by `owner`."""
		owner = self._as_owner(owner)
		for controller_id in list(self._ports):
			self._release_on_controller(owner, controller_id)
		for relay_id in list(self._relays):
			self._release_on_relay(owner, relay_id)

	def bind_device(self, device: DeviceDefinition, template: DeviceTemplate) -> None:
		"""Create-or-update occupancy for a device, including moves and disabling."""
		owner = PortOwner(kind="device", id=device.id, name=device.name)
		if not device.enabled:
			self.release(owner)
			logger.info(f"Device '{device.id}' disabled; released its ports")
			return
		if not template.is_active:
			raise ValidationError(f"Device '{device.id}' uses inactive template '{template.type}'")

		binding = device.binding
		if isinstance(binding, DirectBinding):
			pins = self._direct_pins(device, template, strict=False)
			self.allocate(owner, binding.controller_id, pins.values())
			for controller_id in self._ports:
				if controller_id != binding.controller_id:
					self._release_on_controller(owner, controller_id)
			for relay_id in self._relays:
				self._release_on_relay(owner, relay_id)
		else:
			self.allocate_channel(owner, binding.relay_id, binding.channel)
			for relay_id in self._relays:
				if relay_id != binding.relay_id:
					self._release_on_relay(owner, relay_id)
			for controller_id in self._ports:
				self._release_on_controller(owner, controller_id)

	def delete_device(self, device_id: str) -> None:
		self.release(PortOwner(kind="device", id=device_id))

	# --- resolution ---

	def resolve(self, device: DeviceDefinition, template: DeviceTemplate) -> ResolvedBinding:
		"""Turn a device's binding into controller/pin coordinates.

		Raises CompileError if a required role has neither an explicit pin nor a default,
		and ConflictError unless the device currently holds every port (or the channel)
		it resolves to.
		"""
		owner = PortOwner(kind="device", id=device.id)
		binding = device.binding
		if isinstance(binding, RelayBinding):
			relay = self._relays.get(binding.relay_id)
			if relay is None:
				raise CompileError(device.id, f"relay '{binding.relay_id}' does not exist")
			channel = relay.definition.get_channel(binding.channel)
			if channel is None:
				raise CompileError(device.id, f"relay '{binding.relay_id}' has no channel {binding.channel}")
			role = next(
				(r.role for r in template.port_requirements if r.required and r.role != POWER_ROLE),
				"control",
			)
			with self._relay_locks[relay.definition.id]:
				holder = relay.channels.get(channel.channel_index)
				if holder is None or not self._same_owner(holder, owner):
					raise ConflictError(
						f"Device '{device.id}' does not hold channel {channel.channel_index} of relay "
						f"'{relay.definition.id}' ({self._describe(holder)})"
					)
			return ResolvedBinding(
				device_id=device.id,
				controller_id=relay.definition.controller_id,
				pins={role: channel.controller_port_id},
				relay_id=relay.definition.id,
				channel=channel.channel_index,
				relay_logic=relay.definition.logic,
			)
		pins = self._direct_pins(device, template, strict=True)
		with self._controller_lock(binding.controller_id):
			ports = self._ports[binding.controller_id]
			for port_id in pins.values():
				state = ports.get(port_id)
				holder = state.occupied_by if state else None
				if holder is None or not self._same_owner(holder, owner):
					raise ConflictError(
						f"Device '{device.id}' does not hold port '{port_id}' on controller "
						f"'{binding.controller_id}' ({self._describe(holder)})"
					)
		return ResolvedBinding(
			device_id=device.id,
			controller_id=binding.controller_id,
			pins=pins,
		)

	# --- inspection ---

	def ports(self, controller_id: str) -> List[PortState]:
		with self._controller_lock(controller_id):
			return [
				PortState(s.port_id, s.port_type, s.is_active, s.occupied_by)
				for s in self._ports[controller_id].values()
			]

	def channels(self, relay_id: str) -> Dict[int, Optional[PortOwner]]:
		relay = self._relays.get(relay_id)
		if relay is None:
			raise ConflictError(f"Relay '{relay_id}' does not exist")
		with self._relay_locks[relay_id]:
			return dict(relay.channels)

	def owner_of(self, controller_id: str, port_id: str) -> Optional[PortOwner]:
		with self._controller_lock(controller_id):
			state = self._ports[controller_id].get(port_id)
			return state.occupied_by if state else None

	def controller_ids(self) -> List[str]:
		return list(self._ports)

	def relay_ids(self) -> List[str]:
		return list(self._relays)

	# --- internals ---

	@staticmethod
	def _as_owner(owner: PortOwner | str) -> PortOwner:
		return owner if isinstance(owner, PortOwner) else PortOwner(kind="device", id=owner)

	@staticmethod
	def _same_owner(a: PortOwner, b: PortOwner) -> bool:
		return (a.kind, a.id) == (b.kind, b.id)

	@staticmethod
	def _describe(holder: Optional[PortOwner]) -> str:
		return "free" if holder is None else f"used by {holder.kind} '{holder.id}'"

	def _controller_lock(self, controller_id: str) -> threading.Lock:
		lock = self._controller_locks.get(controller_id)
		if lock is None:
			raise ConflictError(f"Controller '{controller_id}' does not exist")
		return lock

	def _release_on_controller(self, owner: PortOwner, controller_id: str) -> None:
		with self._controller_locks[controller_id]:
			for state in self._ports[controller_id].values():
				if state.occupied_by is not None and self._same_owner(state.occupied_by, owner):
					state.occupied_by = None

	def _release_on_relay(self, owner: PortOwner, relay_id: str) -> None:
		relay = self._relays[relay_id]
		with self._relay_locks[relay_id]:
			for index, holder in relay.channels.items():
				if holder is not None and self._same_owner(holder, owner):
					relay.channels[index] = None

	@staticmethod
	def _direct_pins(device: DeviceDefinition, template: DeviceTemplate, *, strict: bool) -> Dict[str, str]:
		binding = device.binding
		assert isinstance(binding, DirectBinding)
		pins: Dict[str, str] = {}
		missing: List[str] = []
		for requirement in template.port_requirements:
			if requirement.role == POWER_ROLE:
				continue
			port_id = binding.pins.get(requirement.role) or requirement.default_pin
			if port_id:
				pins[requirement.role] = port_id
			elif requirement.required:
				missing.append(requirement.role)
		if missing and strict:
			raise CompileError(device.id, f"no pin bound for required roles {missing}", missing=missing)
		return pins


def port_summary(states: Iterable[PortState]) -> List[Tuple[str, str, str]]:
	"""(port, type, owner) rows for display."""
	rows = []
	for s in states:
		if not s.is_active:
			holder = "inactive"
		elif s.occupied_by is None:
			holder = "free"
		else:
			holder = f"{s.occupied_by.kind}:{s.occupied_by.id}"
		rows.append((s.port_id, s.port_type, holder))
	return rows
