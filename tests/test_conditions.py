import pytest

from shared_libs.config_models.flow_models import ComparatorType, VariableDefinition
from shared_libs.hardware_core.errors import UnresolvedVariableError, ValidationError

from control.conditions import as_boolean, compare
from control.variables import VariableStore


@pytest.mark.parametrize("left, op, right, expected", [
    (10, ">", 9, True),
    ("10", ">", 9, True),       # numeric, not lexical
    ("9", "<", "10", True),
    (5, "==", 5.0, True),
    (5, "!=", 5.0, False),
    (5, ">=", 5, True),
    (4.9, "<=", 5, True),
    (True, "==", "on", True),
    ("off", "!=", True, True),
    ("abc", "<", "abd", True),
    ("abc", "==", "ABC", False),
])
def test_compare(left, op, right, expected):
    assert compare(left, ComparatorType(op), right) is expected


@pytest.mark.parametrize("left, op, right, expected", [
    (6.05, "==", 6.0, True),
    (6.2, "==", 6.0, False),
    (6.05, "!=", 6.0, False),
    (5.95, ">", 6.0, True),
    (5.85, ">", 6.0, False),
    (6.05, "<", 6.0, True),
    (6.15, "<", 6.0, False),
    (5.95, ">=", 6.0, True),
    (6.05, "<=", 6.0, True),
])
def test_compare_with_tolerance(left, op, right, expected):
    assert compare(left, ComparatorType(op), right, tolerance=0.1) is expected


def test_as_boolean_words():
    assert as_boolean("Yes") is True
    assert as_boolean("no") is False
    assert as_boolean("maybe") is None
    assert as_boolean(1) is None


def _store(inputs=None):
    definitions = {
        "target": VariableDefinition(id="target", scope="global", type="number", default=6.0, tolerance=0.2),
        "enabled": VariableDefinition(id="enabled", scope="global", type="boolean", default="true"),
        "label": VariableDefinition(id="label", scope="global", type="string", default="tank"),
        "ph": VariableDefinition(id="ph", scope="local", type="number"),
    }
    return VariableStore(definitions, inputs)


def test_inputs_are_coerced_to_declared_types():
    store = _store({"target": "6.5", "enabled": "off"})
    assert store.get("target") == 6.5
    assert store.get("enabled") is False
    assert store.get("label") == "tank"


def test_undeclared_and_local_inputs_are_rejected():
    with pytest.raises(ValidationError, match="undeclared"):
        _store({"nope": 1})
    with pytest.raises(ValidationError, match="local"):
        _store({"ph": 7})


def test_bad_input_type_is_rejected():
    with pytest.raises(ValidationError, match="expects a number"):
        _store({"target": "high"})


def test_unset_variable_is_unresolved():
    store = _store()
    with pytest.raises(UnresolvedVariableError):
        store.get("ph")
    store.set("ph", 6.8)
    assert store.resolve("{{ph}}") == 6.8
    assert store.resolve("ph") == "ph"


def test_render_substitutes_every_reference():
    store = _store()
    store.set("ph", 6.8)
    assert store.render("{{label}} pH {{ ph }} / {{target}}") == "tank pH 6.8 / 6.0"


def test_tolerance_comes_from_global_on_either_side():
    store = _store()
    assert store.tolerance_for("ph", "{{target}}") == 0.2
    assert store.tolerance_for("target", 7) == 0.2
    assert store.tolerance_for("ph", 7) is None
