from __future__ import annotations

from typing import Iterable, List, Optional


class HydroflowError(Exception):
	"""Base class for every error raised by the hardware core and the flow engine."""


class ValidationError(HydroflowError, ValueError):
	"""A flow graph or inventory is malformed. Raised at load time, never mid-run."""

	def __init__(self, problems: Iterable[str] | str):
		if isinstance(problems, str):
			problems = [problems]
		self.problems: List[str] = list(problems)
		super().__init__("; ".join(self.problems) or "validation failed")


class CompileError(HydroflowError):
	def __init__(self, device_id: str, message: str, missing: Optional[List[str]] = None):
		self.device_id = device_id
		self.missing = list(missing or [])
		super().__init__(f"Device '{device_id}': {message}")


class ConflictError(HydroflowError):
	"""A port or relay channel is inactive, unknown or owned by someone else."""


class TransportError(HydroflowError):
	def __init__(self, controller_id: str, message: str):
		self.controller_id = controller_id
		super().__init__(f"Controller '{controller_id}': {message}")


class TransportTimeout(TransportError):
	pass


class ValidationFailure(HydroflowError):
	"""A reading could not be vetted and the fallback policy refused to cover for it."""

	def __init__(self, device_id: str, message: str):
		self.device_id = device_id
		super().__init__(f"Device '{device_id}': {message}")


class RunawayGuardError(HydroflowError):
	def __init__(self, block_id: str, max_iterations: int):
		self.block_id = block_id
		self.max_iterations = max_iterations
		super().__init__(f"Loop '{block_id}' exceeded max_iterations={max_iterations}")


class SafetyError(HydroflowError):
	"""A compensating actuator command (timed OFF, stop revert) failed."""

	def __init__(self, device_id: str, message: str):
		self.device_id = device_id
		super().__init__(f"Device '{device_id}' may be left energised: {message}")


class SessionStateError(HydroflowError):
	pass


class UnresolvedVariableError(HydroflowError):
	def __init__(self, variable_id: str):
		self.variable_id = variable_id
		super().__init__(f"Variable '{variable_id}' has no value")
