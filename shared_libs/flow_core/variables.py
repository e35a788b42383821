from __future__ import annotations

import re
from typing import Any, Iterator, Optional, Set


VARIABLE_REF = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")


def whole_reference(value: Any) -> Optional[str]:
	"""'{{temp}}' -> 'temp'; None when the value is not exactly one reference."""
	if not isinstance(value, str):
		return None
	match = VARIABLE_REF.fullmatch(value.strip())
	return match.group(1) if match else None


def references(value: Any) -> Iterator[str]:
	if isinstance(value, str):
		for match in VARIABLE_REF.finditer(value):
			yield match.group(1)


def referenced_ids(*values: Any) -> Set[str]:
	found: Set[str] = set()
	for value in values:
		found.update(references(value))
	return found


def operand_variable(name: Any) -> Optional[str]:
	"""Left operands of conditions may be a bare id or a {{ref}}."""
	if not isinstance(name, str):
		return None
	return whole_reference(name) or name.strip() or None
