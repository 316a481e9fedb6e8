"""Expression variants that appear inside attribute values.

A string in the configuration document may embed ``${...}`` expressions. They
are parsed once, at load time, into tagged variants so that every later stage
(dependency extraction, binding, resolution) walks a structure instead of
re-scanning text:

* ``VariableRef``: ``${var.NAME}``
* ``ResourceRef``: ``${TYPE.NAME.ATTR[.KEY...]}``
* ``Interpolation``: literal text mixed with references, always a string once
  every part is known

Everything else in an attribute value is a literal.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Tuple, Union

from converge.utils.errors import ErrorContext, ParseError
from converge.utils.sensitive import REDACTED, Sensitive, is_digest_marker, unwrap

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
PATH_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    __str__ = __repr__


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class VariableRef:
    """Reference to a declared variable."""

    name: str

    def __str__(self) -> str:
        return "${var.%s}" % self.name


@dataclass(frozen=True)
class ResourceRef:
    """Reference to an attribute of another resource."""

    address: str
    path: Tuple[str, ...]

    @property
    def attribute(self) -> str:
        return self.path[0]

    def __str__(self) -> str:
        return "${%s.%s}" % (self.address, ".".join(self.path))


Reference = Union[VariableRef, ResourceRef]


@dataclass(frozen=True)
class Interpolation:
    """Literal text mixed with references."""

    parts: Tuple[Any, ...]

    def references(self) -> Iterator[Reference]:
        for part in self.parts:
            if isinstance(part, (VariableRef, ResourceRef)):
                yield part

    def __str__(self) -> str:
        return "".join(str(part) for part in self.parts)


def is_identifier(value: Any) -> bool:
    return isinstance(value, str) and bool(IDENTIFIER_PATTERN.match(value))


def is_address(value: Any) -> bool:
    if not isinstance(value, str) or value.count(".") != 1:
        return False
    resource_type, name = value.split(".")
    return is_identifier(resource_type) and is_identifier(name)


def parse_reference(body: str, location: Optional[str] = None) -> Reference:
    """Parse the body of a ``${...}`` expression.

    Raises:
        ParseError: If the body is not a variable or resource reference
    """
    segments = body.strip().split(".")
    context = ErrorContext(location=location)

    if segments[0] == "var":
        if len(segments) != 2 or not is_identifier(segments[1]):
            raise ParseError(f"Malformed variable reference '${{{body}}}'", context=context)
        return VariableRef(segments[1])

    if len(segments) < 3:
        raise ParseError(
            f"Malformed reference '${{{body}}}': expected TYPE.NAME.ATTRIBUTE or var.NAME",
            context=context
        )
    if not (is_identifier(segments[0]) and is_identifier(segments[1])):
        raise ParseError(f"Malformed resource address in '${{{body}}}'", context=context)
    for segment in segments[2:]:
        if not PATH_SEGMENT_PATTERN.match(segment):
            raise ParseError(f"Malformed attribute path in '${{{body}}}'", context=context)

    return ResourceRef(address=f"{segments[0]}.{segments[1]}", path=tuple(segments[2:]))


def parse_string(text: str, location: Optional[str] = None) -> Any:
    """Parse a string that may contain ``${...}`` expressions."""
    if "${" not in text:
        return text

    parts = []
    buffer = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            buffer.append("${")
            i += 3
        elif text.startswith("${", i):
            end = text.find("}", i + 2)
            if end == -1:
                raise ParseError(
                    f"Unterminated expression in '{text}'",
                    context=ErrorContext(location=location)
                )
            if buffer:
                parts.append("".join(buffer))
                buffer = []
            parts.append(parse_reference(text[i + 2:end], location))
            i = end + 1
        else:
            buffer.append(text[i])
            i += 1
    if buffer:
        parts.append("".join(buffer))

    if not any(isinstance(part, (VariableRef, ResourceRef)) for part in parts):
        return "".join(parts)
    if len(parts) == 1:
        return parts[0]
    return Interpolation(tuple(parts))


def parse_value(value: Any, location: Optional[str] = None) -> Any:
    """Recursively parse expressions in a raw YAML value."""
    if isinstance(value, str):
        return parse_string(value, location)
    if isinstance(value, dict):
        return {
            key: parse_value(item, f"{location} -> {key}" if location else str(key))
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [
            parse_value(item, f"{location} -> {index}" if location else str(index))
            for index, item in enumerate(value)
        ]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference contained in value."""
    if isinstance(value, (VariableRef, ResourceRef)):
        yield value
    elif isinstance(value, Interpolation):
        yield from value.references()
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_references(item)


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


def format_part(value: Any) -> str:
    """Render a resolved value as it appears inside an interpolation."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _join(parts: Tuple[Any, ...]) -> Any:
    if any(part is UNKNOWN or contains_unknown(part) for part in parts):
        return UNKNOWN
    text = "".join(format_part(unwrap(part)) for part in parts)
    if any(isinstance(part, Sensitive) for part in parts):
        return Sensitive(text)
    return text


def substitute(value: Any, replace: Callable[[Reference], Any]) -> Any:
    """Return value with references replaced by ``replace(ref)``.

    ``replace`` may return the reference itself to leave it in place; an
    interpolation is only joined into a string once none of its parts is
    a reference any more.
    """
    if isinstance(value, (VariableRef, ResourceRef)):
        return replace(value)
    if isinstance(value, Interpolation):
        parts = tuple(
            replace(part) if isinstance(part, (VariableRef, ResourceRef)) else part
            for part in value.parts
        )
        if any(isinstance(part, (VariableRef, ResourceRef)) for part in parts):
            return Interpolation(parts)
        return _join(parts)
    if isinstance(value, dict):
        return {key: substitute(item, replace) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute(item, replace) for item in value]
    return value


def render(value: Any) -> Any:
    """Display form of a value: expressions as text, secrets masked."""
    if isinstance(value, Sensitive) or is_digest_marker(value):
        return REDACTED
    if isinstance(value, (VariableRef, ResourceRef, Interpolation, _Unknown)):
        return str(value)
    if isinstance(value, dict):
        return {key: render(item) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item) for item in value]
    return value
