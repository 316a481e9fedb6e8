"""Variable value resolution and binding."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml

from converge.config.expressions import VariableRef, substitute
from converge.config.models import Document, VariableDeclaration, VariableType
from converge.utils.errors import ErrorContext, ParseError, UndeclaredVariableError, VariableValueError
from converge.utils.logging import get_logger
from converge.utils.sensitive import Sensitive

logger = get_logger(__name__)

ENV_PREFIX = "CONVERGE_VAR_"

TRUE_STRINGS = {"true", "1", "yes", "on"}
FALSE_STRINGS = {"false", "0", "no", "off"}
INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")


def parse_var_assignments(assignments: Iterable[str]) -> Dict[str, str]:
    """Parse ``NAME=VALUE`` strings given on the command line."""
    values = {}
    for assignment in assignments:
        if "=" not in assignment:
            raise VariableValueError(
                f"Invalid variable assignment '{assignment.split('=')[0]}': expected NAME=VALUE"
            )
        name, value = assignment.split("=", 1)
        values[name.strip()] = value
    return values


def load_var_file(path: str) -> Dict[str, Any]:
    """Load variable values from a YAML file."""
    var_path = Path(path)
    if not var_path.exists():
        raise ParseError(f"Variable file not found: {var_path}")
    try:
        data = yaml.safe_load(var_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ParseError(f"Failed to parse variable file {var_path}: {e}", cause=e)
    if not isinstance(data, dict):
        raise ParseError(f"Variable file {var_path} must contain a mapping")
    return data


def _describe(declaration: VariableDeclaration, raw: Any) -> str:
    if declaration.sensitive:
        return f"Variable '{declaration.name}'"
    return f"Variable '{declaration.name}' value {raw!r}"


def coerce_value(declaration: VariableDeclaration, raw: Any, from_text: bool) -> Any:
    """Coerce a raw value to the declared type.

    Args:
        declaration: Variable declaration
        raw: Raw value
        from_text: Whether raw came from a command line or environment string

    Raises:
        VariableValueError: If the value cannot be coerced
    """
    kind = declaration.type

    if kind == VariableType.ANY:
        return raw

    if kind == VariableType.STRING:
        if isinstance(raw, bool) or isinstance(raw, (dict, list)) or raw is None:
            raise VariableValueError(f"{_describe(declaration, raw)} is not a string")
        return str(raw)

    if kind == VariableType.NUMBER:
        if isinstance(raw, bool):
            raise VariableValueError(f"{_describe(declaration, raw)} is not a number")
        if isinstance(raw, (int, float)):
            return raw
        if from_text and isinstance(raw, str):
            text = raw.strip()
            try:
                return int(text) if INTEGER_PATTERN.match(text) else float(text)
            except ValueError:
                pass
        raise VariableValueError(f"{_describe(declaration, raw)} is not a number")

    if kind == VariableType.BOOL:
        if isinstance(raw, bool):
            return raw
        if from_text and isinstance(raw, str):
            text = raw.strip().lower()
            if text in TRUE_STRINGS:
                return True
            if text in FALSE_STRINGS:
                return False
        raise VariableValueError(f"{_describe(declaration, raw)} is not a bool")

    expected = list if kind == VariableType.LIST else dict
    if from_text and isinstance(raw, str):
        try:
            raw = yaml.safe_load(raw)
        except yaml.YAMLError:
            raise VariableValueError(f"{_describe(declaration, raw)} is not a {kind.value}")
    if not isinstance(raw, expected):
        raise VariableValueError(f"{_describe(declaration, raw)} is not a {kind.value}")
    return raw


def resolve_variables(
    document: Document,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Resolve a value for every declared variable.

    Precedence: explicit overrides, then ``CONVERGE_VAR_<NAME>`` environment
    variables, then the declared default. Values of sensitive variables are
    wrapped in Sensitive.

    Raises:
        UndeclaredVariableError: If an override names an undeclared variable
        VariableValueError: If a variable has no value or a badly typed one
    """
    overrides = dict(overrides or {})
    environ = os.environ if environ is None else environ

    for name in overrides:
        if name not in document.variables:
            raise UndeclaredVariableError(
                name,
                message=f"Value supplied for undeclared variable '{name}'"
            )

    values: Dict[str, Any] = {}
    for name, declaration in document.variables.items():
        env_key = f"{ENV_PREFIX}{name}"
        if name in overrides:
            raw = overrides[name]
            value = coerce_value(declaration, raw, from_text=isinstance(raw, str))
            origin = "override"
        elif env_key in environ:
            value = coerce_value(declaration, environ[env_key], from_text=True)
            origin = "environment"
        elif declaration.has_default:
            value = coerce_value(declaration, declaration.default, from_text=False)
            origin = "default"
        else:
            raise VariableValueError(
                f"No value for variable '{name}'",
                context=ErrorContext(location=f"variables -> {name}"),
                suggestions=[f"Pass --var {name}=VALUE", f"Set the {env_key} environment variable"]
            )

        if declaration.sensitive:
            value = Sensitive(value)
        values[name] = value
        logger.debug(f"Variable '{name}' resolved from {origin}")

    return values


def bind_variables(document: Document, values: Mapping[str, Any]) -> Document:
    """Return a document whose variable references are replaced by values.

    Raises:
        UndeclaredVariableError: If a referenced variable has no value
    """
    def replace(ref):
        if isinstance(ref, VariableRef):
            if ref.name not in values:
                raise UndeclaredVariableError(ref.name)
            return values[ref.name]
        return ref

    resources = [
        resource.model_copy(update={"attributes": substitute(resource.attributes, replace)})
        for resource in document.resources
    ]
    outputs = {
        name: output.model_copy(update={"value": substitute(output.value, replace)})
        for name, output in document.outputs.items()
    }
    return document.model_copy(update={"resources": resources, "outputs": outputs})
