"""YAML configuration document loader."""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from converge.config.expressions import (
    ResourceRef,
    VariableRef,
    is_identifier,
    iter_references,
    parse_value,
)
from converge.config.models import (
    Document,
    EngineSettings,
    OutputDeclaration,
    ResourceDeclaration,
    VariableDeclaration,
)
from converge.utils.errors import (
    ErrorContext,
    ParseError,
    UndeclaredResourceError,
    UndeclaredVariableError,
)
from converge.utils.logging import get_logger

logger = get_logger(__name__)

TOP_LEVEL_KEYS = {"settings", "variables", "resources", "outputs"}
RESERVED_ATTRIBUTES = {"depends_on"}


def _pydantic_errors(error: ValidationError, prefix: List[Any]) -> List[Dict]:
    return [
        {"loc": prefix + list(item["loc"]), "msg": item["msg"]}
        for item in error.errors()
    ]


class ConfigLoader:
    """Loads a configuration document from the filesystem."""

    def __init__(self, config_path: str):
        """Initialize configuration loader.

        Args:
            config_path: Path to the YAML configuration document
        """
        self.config_path = Path(config_path)

    def load(self) -> Document:
        """Load, parse and validate the document.

        Returns:
            Parsed Document

        Raises:
            ParseError: If the file is missing, is not valid YAML or is malformed
            UndeclaredVariableError: If a value references an undeclared variable
            UndeclaredResourceError: If a value references an undeclared resource
        """
        if not self.config_path.exists():
            raise ParseError(
                f"Configuration file not found: {self.config_path}",
                suggestions=["Pass the document path with --config"]
            )

        text = self.config_path.read_text(encoding="utf-8")
        return load_document(text, source=str(self.config_path))


def load_document(text: str, source: Optional[str] = None) -> Document:
    """Parse a configuration document from YAML text.

    This is a pure function: nothing outside the returned Document is touched.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError(f"Failed to parse YAML in {source or 'document'}: {e}", cause=e)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseError("Document root must be a mapping")

    errors: List[Dict] = []
    for key in data:
        if key not in TOP_LEVEL_KEYS:
            errors.append({"loc": [key], "msg": f"Unknown top-level key '{key}'"})

    settings = _parse_settings(data.get("settings"), errors)
    variables = _parse_variables(data.get("variables"), errors)
    resources = _parse_resources(data.get("resources"), errors)
    outputs = _parse_outputs(data.get("outputs"), errors)

    if errors:
        raise ParseError(
            f"Configuration validation failed with {len(errors)} error(s)",
            errors
        )

    document = Document(
        settings=settings,
        variables=variables,
        resources=resources,
        outputs=outputs,
        source=source,
    )
    check_references(document)

    logger.debug(
        f"Loaded {len(resources)} resources, {len(variables)} variables and "
        f"{len(outputs)} outputs from {source or 'document'}"
    )
    return document


def _parse_settings(raw: Any, errors: List[Dict]) -> EngineSettings:
    if raw is None:
        return EngineSettings()
    if not isinstance(raw, dict):
        errors.append({"loc": ["settings"], "msg": "Settings must be a mapping"})
        return EngineSettings()
    try:
        return EngineSettings(**raw)
    except ValidationError as e:
        errors.extend(_pydantic_errors(e, ["settings"]))
        return EngineSettings()


def _parse_variables(raw: Any, errors: List[Dict]) -> Dict[str, VariableDeclaration]:
    variables: Dict[str, VariableDeclaration] = {}
    if raw is None:
        return variables
    if not isinstance(raw, dict):
        errors.append({"loc": ["variables"], "msg": "Variables must be a mapping"})
        return variables

    for name, spec in raw.items():
        spec = spec if spec is not None else {}
        if not isinstance(spec, dict):
            errors.append({"loc": ["variables", name], "msg": "Variable declaration must be a mapping"})
            continue
        try:
            variables[name] = VariableDeclaration(
                name=name,
                has_default="default" in spec,
                **spec
            )
        except (ValidationError, TypeError) as e:
            if isinstance(e, ValidationError):
                errors.extend(_pydantic_errors(e, ["variables", name]))
            else:
                errors.append({"loc": ["variables", name], "msg": str(e)})

    return variables


def _parse_resources(raw: Any, errors: List[Dict]) -> List[ResourceDeclaration]:
    resources: List[ResourceDeclaration] = []
    if raw is None:
        errors.append({"loc": ["resources"], "msg": "Required field 'resources' is missing"})
        return resources
    if not isinstance(raw, dict):
        errors.append({"loc": ["resources"], "msg": "Resources must be a mapping of type to names"})
        return resources

    index = 0
    for resource_type, named in raw.items():
        if not is_identifier(resource_type):
            errors.append({"loc": ["resources", resource_type], "msg": "Invalid resource type"})
            continue
        if not isinstance(named, dict):
            errors.append(
                {"loc": ["resources", resource_type], "msg": "Must be a mapping of name to attributes"}
            )
            continue

        for name, attributes in named.items():
            location = ["resources", resource_type, name]
            attributes = attributes if attributes is not None else {}
            if not isinstance(attributes, dict):
                errors.append({"loc": location, "msg": "Attributes must be a mapping"})
                continue

            depends_on = attributes.get("depends_on", [])
            if not isinstance(depends_on, list):
                errors.append({"loc": location + ["depends_on"], "msg": "depends_on must be a list"})
                continue

            body = {key: value for key, value in attributes.items() if key not in RESERVED_ATTRIBUTES}
            try:
                parsed = parse_value(body, " -> ".join(str(loc) for loc in location))
                resources.append(ResourceDeclaration(
                    type=resource_type,
                    name=name,
                    attributes=parsed,
                    depends_on=tuple(depends_on),
                    index=index,
                ))
                index += 1
            except ParseError as e:
                errors.append({"loc": location, "msg": e.message})
            except ValidationError as e:
                errors.extend(_pydantic_errors(e, location))

    return resources


def _parse_outputs(raw: Any, errors: List[Dict]) -> Dict[str, OutputDeclaration]:
    outputs: Dict[str, OutputDeclaration] = {}
    if raw is None:
        return outputs
    if not isinstance(raw, dict):
        errors.append({"loc": ["outputs"], "msg": "Outputs must be a mapping"})
        return outputs

    for name, spec in raw.items():
        location = ["outputs", name]
        if not isinstance(spec, dict) or "value" not in spec:
            errors.append({"loc": location, "msg": "Output must be a mapping with a 'value'"})
            continue
        try:
            value = parse_value(spec["value"], " -> ".join(str(loc) for loc in location))
            outputs[name] = OutputDeclaration(
                name=name,
                value=value,
                sensitive=spec.get("sensitive", False),
                description=spec.get("description", ""),
            )
        except ParseError as e:
            errors.append({"loc": location, "msg": e.message})
        except ValidationError as e:
            errors.extend(_pydantic_errors(e, location))

    return outputs


def check_references(document: Document) -> None:
    """Ensure every reference names a declared variable or resource.

    Raises:
        UndeclaredVariableError: On the first reference to an undeclared variable
        UndeclaredResourceError: On the first reference to an undeclared resource
    """
    addresses = set(document.addresses())

    def check(value: Any, location: str) -> None:
        for ref in iter_references(value):
            if isinstance(ref, VariableRef) and ref.name not in document.variables:
                raise UndeclaredVariableError(
                    ref.name,
                    context=ErrorContext(location=location),
                    suggestions=[f"Declare '{ref.name}' under 'variables'"]
                )
            if isinstance(ref, ResourceRef) and ref.address not in addresses:
                raise UndeclaredResourceError(
                    ref.address,
                    context=ErrorContext(location=location)
                )

    for resource in document.resources:
        location = f"resources -> {resource.type} -> {resource.name}"
        check(resource.attributes, location)
        for address in resource.depends_on:
            if address not in addresses:
                raise UndeclaredResourceError(
                    address,
                    message=f"depends_on names undeclared resource '{address}'",
                    context=ErrorContext(resource_id=resource.address, location=location)
                )

    for output in document.outputs.values():
        check(output.value, f"outputs -> {output.name}")
