# control/variables.py

from typing import Any, Dict, Mapping, Optional

from shared_libs.config_models.flow_models import VariableDefinition, VariableScope, VariableType
from shared_libs.flow_core.variables import VARIABLE_REF, operand_variable, whole_reference
from shared_libs.hardware_core.errors import UnresolvedVariableError, ValidationError

from control.conditions import as_boolean, as_number


def coerce(definition: VariableDefinition, value: Any) -> Any:
    if value is None:
        return None
    if definition.type == VariableType.NUMBER:
        number = as_number(value)
        if number is None:
            raise ValidationError(f"Variable '{definition.id}' expects a number, got {value!r}")
        return int(number) if number.is_integer() and not isinstance(value, float) else number
    if definition.type == VariableType.BOOLEAN:
        flag = as_boolean(value)
        if flag is None:
            raise ValidationError(f"Variable '{definition.id}' expects a boolean, got {value!r}")
        return flag
    return str(value)


class VariableStore:
    """Per-session variable values.

    Globals are seeded from caller inputs (falling back to their defaults);
    locals start at their defaults and are written by the flow.
    """

    def __init__(self, definitions: Mapping[str, VariableDefinition], inputs: Optional[Mapping[str, Any]] = None):
        self.definitions = dict(definitions)
        self._values: Dict[str, Any] = {}
        inputs = dict(inputs or {})
        unknown = sorted(set(inputs) - set(self.definitions))
        if unknown:
            raise ValidationError(f"Inputs for undeclared variables: {unknown}")
        for var_id, definition in self.definitions.items():
            if var_id in inputs:
                if definition.scope != VariableScope.GLOBAL:
                    raise ValidationError(f"Variable '{var_id}' is local and cannot be supplied as an input")
                self._values[var_id] = coerce(definition, inputs[var_id])
            else:
                self._values[var_id] = coerce(definition, definition.default)

    def get(self, var_id: str) -> Any:
        value = self._values.get(var_id)
        if value is None:
            raise UnresolvedVariableError(var_id)
        return value

    def set(self, var_id: str, value: Any) -> None:
        definition = self.definitions.get(var_id)
        if definition is None:
            raise UnresolvedVariableError(var_id)
        self._values[var_id] = coerce(definition, value)

    def resolve(self, value: Any) -> Any:
        """A whole '{{id}}' becomes the variable's value; anything else is a literal."""
        ref = whole_reference(value)
        return self.get(ref) if ref is not None else value

    def resolve_operand(self, name: str) -> Any:
        return self.get(operand_variable(name))

    def render(self, text: str) -> str:
        return VARIABLE_REF.sub(lambda m: str(self.get(m.group(1))), text)

    def tolerance_for(self, left: str, right: Any) -> Optional[float]:
        """Tolerance declared by the left variable, else by a {{ref}} on the right."""
        for var_id in (operand_variable(left), whole_reference(right)):
            definition = self.definitions.get(var_id) if var_id else None
            if definition is not None and definition.scope == VariableScope.GLOBAL and definition.tolerance:
                return definition.tolerance
        return None

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)
