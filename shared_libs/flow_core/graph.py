from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from shared_libs.config_models.catalog_models import PhysicalType
from shared_libs.config_models.flow_models import (
	ActuatorAction,
	ActuatorSetBlock,
	AmountUnit,
	ConditionBlock,
	ControlType,
	EdgeLabel,
	FlowControlBlock,
	FlowDefinition,
	LogBlock,
	LoopBlock,
	LoopMode,
	OnFailure,
	SensorReadBlock,
	VariableDefinition,
	VariableScope,
	WaitBlock,
)
from shared_libs.config_models.topology_models import DeviceDefinition
from shared_libs.hardware_core.catalog import CapabilityCatalog
from shared_libs.hardware_core.errors import ValidationError

from .variables import operand_variable, referenced_ids, whole_reference


logger = logging.getLogger(__name__)

VOLUME_UNITS = frozenset({"ml", "l", "gal"})


@dataclass(frozen=True)
class ExecNode:
	"""One immutable execution node; every successor is a node index."""
	index: int
	block_id: str
	type: str
	block: Any
	next_index: Optional[int] = None
	true_index: Optional[int] = None
	false_index: Optional[int] = None
	body_index: Optional[int] = None
	jump_index: Optional[int] = None
	loop_index: Optional[int] = None
	recovery_index: Optional[int] = None
	mirror_source: Optional[str] = None


@dataclass(frozen=True)
class ExecutionGraph:
	flow_id: str
	nodes: Tuple[ExecNode, ...]
	index_of: Mapping[str, int]
	start_index: int
	variables: Mapping[str, VariableDefinition]
	loop_bodies: Mapping[int, FrozenSet[int]]

	def node(self, block_id: str) -> ExecNode:
		return self.nodes[self.index_of[block_id]]

	def device_ids(self) -> Set[str]:
		found: Set[str] = set()
		for node in self.nodes:
			if isinstance(node.block, (SensorReadBlock, ActuatorSetBlock)) and node.block.params.device_id:
				found.add(node.block.params.device_id)
		return found


class GraphBuilder:
	"""Validates a flow definition and compiles it into an index-based graph.

	Problems are collected across every check and raised together as one
	ValidationError, so a bad flow never reaches the interpreter.
	"""

	def __init__(
		self,
		flow: FlowDefinition,
		devices: Optional[Mapping[str, DeviceDefinition]] = None,
		catalog: Optional[CapabilityCatalog] = None,
	):
		self.flow = flow
		self.devices = devices
		self.catalog = catalog
		self.problems: List[str] = []
		self._blocks = {b.id: b for b in flow.blocks}
		self._index = {b.id: i for i, b in enumerate(flow.blocks)}
		self._variables = {v.id: v for v in flow.variables}

	def build(self) -> ExecutionGraph:
		start_index = self._check_start()
		successors = self._successors()
		labels = self._labels()
		blocks = self._materialize_mirrors()
		self._check_variables(blocks)
		self._check_devices(blocks)

		provisional = {
			bid: ExecNode(
				index=self._index[bid],
				block_id=bid,
				type=block.type,
				block=block,
				next_index=successors[bid].get("next"),
				true_index=successors[bid].get(EdgeLabel.TRUE.value),
				false_index=successors[bid].get(EdgeLabel.FALSE.value),
				body_index=successors[bid].get(EdgeLabel.BODY.value),
			)
			for bid, block in blocks.items()
		}
		loop_bodies = self._loop_bodies(provisional)
		exit_indices = {n.index: n.next_index for n in provisional.values() if n.type == "LOOP"}

		nodes: List[ExecNode] = []
		for block in self.flow.blocks:
			node = provisional[block.id]
			jump_index, loop_index = self._jump_target(node, labels, loop_bodies, exit_indices)
			recovery_index = self._recovery_target(node.block)
			nodes.append(ExecNode(
				index=node.index,
				block_id=node.block_id,
				type=node.type,
				block=node.block,
				next_index=node.next_index,
				true_index=node.true_index,
				false_index=node.false_index,
				body_index=node.body_index,
				jump_index=jump_index,
				loop_index=loop_index,
				recovery_index=recovery_index,
				mirror_source=getattr(self._blocks[block.id], "mirror_of", None),
			))

		if self.problems:
			raise ValidationError([f"Flow '{self.flow.id}': {p}" for p in self.problems])

		graph = ExecutionGraph(
			flow_id=self.flow.id,
			nodes=tuple(nodes),
			index_of=MappingProxyType(dict(self._index)),
			start_index=start_index,
			variables=MappingProxyType(dict(self._variables)),
			loop_bodies=MappingProxyType(loop_bodies),
		)
		self._warn_unreachable(graph)
		return graph

	# --- structure ---

	def _check_start(self) -> int:
		starts = [b.id for b in self.flow.blocks if b.type == "START"]
		if len(starts) != 1:
			self.problems.append(f"expected exactly one START block, found {len(starts)}")
			return 0
		if not any(b.type == "END" for b in self.flow.blocks):
			self.problems.append("flow has no END block")
		return self._index[starts[0]]

	def _successors(self) -> Dict[str, Dict[str, int]]:
		"""Merge `next`/`body` fields with edges into per-block successor indices."""
		targets: Dict[str, Dict[str, str]] = {b.id: {} for b in self.flow.blocks}
		for block in self.flow.blocks:
			if block.next is not None:
				targets[block.id]["next"] = block.next
			if isinstance(block, LoopBlock) and block.body is not None:
				targets[block.id][EdgeLabel.BODY.value] = block.body

		for edge in self.flow.edges:
			if edge.source not in self._blocks:
				self.problems.append(f"edge source '{edge.source}' does not exist")
				continue
			key = edge.label.value if edge.label is not None else "next"
			existing = targets[edge.source].get(key)
			if existing is not None and existing != edge.target:
				self.problems.append(
					f"block '{edge.source}' has conflicting '{key}' successors '{existing}' and '{edge.target}'"
				)
				continue
			targets[edge.source][key] = edge.target

		resolved: Dict[str, Dict[str, int]] = {}
		for block_id, keyed in targets.items():
			resolved[block_id] = {}
			for key, target in keyed.items():
				if target not in self._index:
					self.problems.append(f"block '{block_id}' {key} target '{target}' does not exist")
					continue
				resolved[block_id][key] = self._index[target]

		for block in self.flow.blocks:
			keys = resolved[block.id]
			if isinstance(block, ConditionBlock):
				for label in (EdgeLabel.TRUE.value, EdgeLabel.FALSE.value):
					if label not in keys:
						self.problems.append(f"CONDITION '{block.id}' has no '{label}' successor")
			elif isinstance(block, LoopBlock):
				if EdgeLabel.BODY.value not in keys:
					self.problems.append(f"LOOP '{block.id}' has no body")
				if "next" not in keys:
					self.problems.append(f"LOOP '{block.id}' has no exit successor")
			elif isinstance(block, FlowControlBlock) and block.params.control != ControlType.LABEL:
				continue
			elif block.type != "END" and "next" not in keys:
				self.problems.append(f"{block.type} block '{block.id}' has no next block")
		return resolved

	def _labels(self) -> Dict[str, int]:
		labels: Dict[str, int] = {}
		for block in self.flow.blocks:
			if isinstance(block, FlowControlBlock) and block.params.control == ControlType.LABEL:
				name = block.params.label
				if name in labels:
					self.problems.append(f"label '{name}' is declared more than once")
				labels[name] = self._index[block.id]
		return labels

	def _loop_bodies(self, nodes: Mapping[str, ExecNode]) -> Dict[int, FrozenSet[int]]:
		"""Nodes reachable from each loop's body without passing back through the loop."""
		by_index = {n.index: n for n in nodes.values()}
		bodies: Dict[int, FrozenSet[int]] = {}
		for node in nodes.values():
			if node.type != "LOOP" or node.body_index is None:
				continue
			seen: Set[int] = set()
			queue = deque([node.body_index])
			while queue:
				current = queue.popleft()
				if current == node.index or current in seen:
					continue
				seen.add(current)
				candidate = by_index[current]
				for nxt in (candidate.next_index, candidate.true_index, candidate.false_index, candidate.body_index):
					if nxt is not None:
						queue.append(nxt)
			bodies[node.index] = frozenset(seen)
		return bodies

	def _jump_target(
		self,
		node: ExecNode,
		labels: Mapping[str, int],
		loop_bodies: Mapping[int, FrozenSet[int]],
		exit_indices: Mapping[int, Optional[int]],
	) -> Tuple[Optional[int], Optional[int]]:
		block = node.block
		if not isinstance(block, FlowControlBlock):
			return None, None
		control = block.params.control
		if control == ControlType.GOTO:
			target = block.params.target
			if target in self._index:
				return self._index[target], None
			if target in labels:
				return labels[target], None
			self.problems.append(f"GOTO '{block.id}' targets unknown block or label '{target}'")
		elif control == ControlType.LOOP_BACK:
			target = block.params.target
			index = self._index.get(target)
			if index is None or self.flow.blocks[index].type != "LOOP":
				self.problems.append(f"LOOP_BACK '{block.id}' target '{target}' is not a LOOP block")
				return None, None
			return index, index
		elif control == ControlType.LOOP_BREAK:
			enclosing = [i for i, body in loop_bodies.items() if node.index in body]
			if not enclosing:
				self.problems.append(f"LOOP_BREAK '{block.id}' is not inside any loop")
				return None, None
			nearest = min(enclosing, key=lambda i: len(loop_bodies[i]))
			return exit_indices.get(nearest), nearest
		return None, None

	def _recovery_target(self, block: Any) -> Optional[int]:
		policy = block.on_error
		if policy.on_failure != OnFailure.GOTO:
			return None
		index = self._index.get(policy.recovery_block)
		if index is None:
			self.problems.append(f"block '{block.id}' recovery_block '{policy.recovery_block}' does not exist")
		return index

	# --- mirrors ---

	def _materialize_mirrors(self) -> Dict[str, Any]:
		"""Copy each mirror's source configuration once, into a fresh block."""
		materialized: Dict[str, Any] = {}
		for block in self.flow.blocks:
			if not isinstance(block, SensorReadBlock) or block.mirror_of is None:
				materialized[block.id] = block.model_copy(deep=True)
				continue
			source = self._mirror_root(block)
			if source is None:
				materialized[block.id] = block
				continue
			params = block.params.model_copy(update={
				"device_id": source.params.device_id,
				"sample_count": source.params.sample_count,
				"sample_delay_ms": source.params.sample_delay_ms,
			})
			materialized[block.id] = block.model_copy(update={"params": params}, deep=True)
			logger.debug(f"Mirror '{block.id}' materialized from '{source.id}'")
		return materialized

	def _mirror_root(self, block: SensorReadBlock) -> Optional[SensorReadBlock]:
		visited = [block.id]
		current = block
		while current.mirror_of is not None:
			source = self._blocks.get(current.mirror_of)
			if source is None:
				self.problems.append(f"mirror '{current.id}' references unknown block '{current.mirror_of}'")
				return None
			if not isinstance(source, SensorReadBlock):
				self.problems.append(f"mirror '{current.id}' references non-SENSOR_READ block '{source.id}'")
				return None
			if source.id in visited:
				self.problems.append(f"mirror cycle: {' -> '.join(visited + [source.id])}")
				return None
			visited.append(source.id)
			current = source
		return current

	# --- variables ---

	def _check_variables(self, blocks: Mapping[str, Any]) -> None:
		for block in blocks.values():
			refs: Set[str] = set()
			if isinstance(block, LogBlock):
				refs = referenced_ids(block.params.message)
			elif isinstance(block, WaitBlock):
				refs = referenced_ids(block.params.duration)
				if isinstance(block.params.duration, (int, float)) and block.params.duration < 0:
					self.problems.append(f"WAIT '{block.id}' has a negative duration")
			elif isinstance(block, ActuatorSetBlock):
				refs = referenced_ids(block.params.duration_ms, block.params.amount)
			elif isinstance(block, ConditionBlock):
				refs = self._condition_refs(block.id, block.params)
			elif isinstance(block, LoopBlock):
				refs = referenced_ids(block.params.count)
				if block.params.condition is not None:
					refs |= self._condition_refs(block.id, block.params.condition)
				if block.params.mode == LoopMode.COUNT and isinstance(block.params.count, str) and whole_reference(block.params.count) is None:
					self.problems.append(f"LOOP '{block.id}' count '{block.params.count}' is neither a number nor a {{{{variable}}}}")
			elif isinstance(block, SensorReadBlock):
				target = self._variables.get(block.params.variable)
				if target is None:
					self.problems.append(f"SENSOR_READ '{block.id}' stores into undeclared variable '{block.params.variable}'")
				elif target.scope != VariableScope.LOCAL:
					self.problems.append(f"SENSOR_READ '{block.id}' cannot store into global variable '{target.id}'")
			for ref in sorted(refs - set(self._variables)):
				self.problems.append(f"block '{block.id}' references undeclared variable '{{{{{ref}}}}}'")

	def _condition_refs(self, block_id: str, condition: Any) -> Set[str]:
		refs = referenced_ids(condition.value)
		left = operand_variable(condition.variable)
		if left is not None:
			refs.add(left)
		return refs

	# --- devices ---

	def _check_devices(self, blocks: Mapping[str, Any]) -> None:
		if self.devices is None:
			return
		for block in blocks.values():
			if not isinstance(block, (SensorReadBlock, ActuatorSetBlock)):
				continue
			device_id = block.params.device_id
			if device_id is None:
				continue
			device = self.devices.get(device_id)
			if device is None:
				self.problems.append(f"block '{block.id}' uses unknown device '{device_id}'")
				continue
			if not device.enabled:
				self.problems.append(f"block '{block.id}' uses disabled device '{device_id}'")
			expected = PhysicalType.SENSOR if isinstance(block, SensorReadBlock) else PhysicalType.ACTUATOR
			template = self.catalog.get_template(device.template) if self.catalog is not None else None
			if self.catalog is not None and template is None:
				self.problems.append(f"device '{device_id}' uses unknown template '{device.template}'")
			elif template is not None and template.physical_type != expected:
				self.problems.append(f"{block.type} '{block.id}' needs a {expected.value}, '{device_id}' is a {template.physical_type.value}")
			if isinstance(block, ActuatorSetBlock) and block.params.action == ActuatorAction.DOSE:
				self._check_dose(block, device)

	def _check_dose(self, block: ActuatorSetBlock, device: DeviceDefinition) -> None:
		calibration = device.calibration
		if calibration is None or calibration.flow_rate_ml_per_s is None:
			self.problems.append(f"DOSE '{block.id}': device '{device.id}' has no calibrated flow_rate_ml_per_s")
		if block.params.amount_unit == AmountUnit.DOSES and (calibration is None or calibration.dose_size_ml is None):
			self.problems.append(f"DOSE '{block.id}': device '{device.id}' has no calibrated dose_size_ml")
		if device.display_unit is not None and device.display_unit.strip().lower() not in VOLUME_UNITS:
			self.problems.append(
				f"DOSE '{block.id}': device '{device.id}' displays '{device.display_unit}', which is not a volume unit"
			)

	def _warn_unreachable(self, graph: ExecutionGraph) -> None:
		seen: Set[int] = set()
		queue = deque([graph.start_index])
		while queue:
			current = queue.popleft()
			if current in seen:
				continue
			seen.add(current)
			node = graph.nodes[current]
			for nxt in (node.next_index, node.true_index, node.false_index, node.body_index, node.jump_index, node.recovery_index):
				if nxt is not None:
					queue.append(nxt)
		unreachable = [n.block_id for n in graph.nodes if n.index not in seen]
		if unreachable:
			logger.warning(f"Flow '{graph.flow_id}': blocks not reachable from START: {unreachable}")


def build_graph(
	flow: FlowDefinition,
	devices: Optional[Mapping[str, DeviceDefinition]] = None,
	catalog: Optional[CapabilityCatalog] = None,
) -> ExecutionGraph:
	return GraphBuilder(flow, devices, catalog).build()
