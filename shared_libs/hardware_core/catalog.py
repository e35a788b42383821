from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from shared_libs.config_models.catalog_models import (
	CapabilityCatalogDefinition,
	CommandDefinition,
	DeviceTemplate,
)


logger = logging.getLogger(__name__)


class CapabilityCatalog:
	"""Read-only snapshot of firmware command schemas and device templates.

	Sessions keep the snapshot they were loaded with; refreshing the catalog
	produces a new object rather than mutating this one.
	"""

	def __init__(
		self,
		commands: Iterable[CommandDefinition],
		templates: Iterable[DeviceTemplate],
		*,
		version: int = 1,
	):
		self._commands: Mapping[str, CommandDefinition] = MappingProxyType(
			{c.name: c.model_copy(deep=True) for c in commands}
		)
		self._templates: Mapping[str, DeviceTemplate] = MappingProxyType(
			{t.type: t.model_copy(deep=True) for t in templates}
		)
		self.version = version

	@classmethod
	def from_definition(cls, definition: CapabilityCatalogDefinition) -> "CapabilityCatalog":
		return cls(definition.commands, definition.templates)

	def refreshed(
		self,
		commands: Optional[Iterable[CommandDefinition]] = None,
		templates: Optional[Iterable[DeviceTemplate]] = None,
	) -> "CapabilityCatalog":
		new_commands = list(commands) if commands is not None else list(self._commands.values())
		new_templates = list(templates) if templates is not None else list(self._templates.values())
		snapshot = CapabilityCatalog(new_commands, new_templates, version=self.version + 1)
		logger.info(
			f"Capability catalog refreshed to v{snapshot.version}: "
			f"{len(snapshot.commands)} commands, {len(snapshot.templates)} templates"
		)
		return snapshot

	@property
	def commands(self) -> Mapping[str, CommandDefinition]:
		return self._commands

	@property
	def templates(self) -> Mapping[str, DeviceTemplate]:
		return self._templates

	def get_command(self, name: str) -> Optional[CommandDefinition]:
		return self._commands.get(name)

	def get_template(self, template_type: str) -> Optional[DeviceTemplate]:
		return self._templates.get(template_type)
