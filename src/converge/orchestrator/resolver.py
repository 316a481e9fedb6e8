"""Resolution of resource references against known resource states."""

import threading
from typing import Any, Dict, Optional

from converge.config.expressions import UNKNOWN, ResourceRef, VariableRef, contains_unknown, substitute
from converge.utils.errors import ErrorContext, ReferenceResolutionError
from converge.utils.sensitive import Sensitive, is_digest_marker

_MISSING = object()


def walk_path(value: Any, path) -> Any:
    """Follow attribute path segments into nested mappings and lists."""
    path = list(path)
    for position, segment in enumerate(path):
        if isinstance(value, Sensitive):
            inner = walk_path(value.value, path[position:])
            return _MISSING if inner is _MISSING else Sensitive(inner)
        if isinstance(value, dict):
            if segment not in value:
                return _MISSING
            value = value[segment]
        elif isinstance(value, list) and segment.isdigit() and int(segment) < len(value):
            value = value[int(segment)]
        else:
            return _MISSING
    return value


class Resolver:
    """Resolves ``ResourceRef`` values from what is known about each resource.

    A reference is answered from the referenced resource's declared (already
    resolved) value when it has one, else from its observed attributes. When
    neither knows the value, planning yields UNKNOWN and apply-time
    resolution (``strict``) raises ReferenceResolutionError.
    """

    def __init__(self, strict: bool = False):
        self.strict = strict
        self._desired: Dict[str, Dict[str, Any]] = {}
        self._observed: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def set_desired(self, address: str, attributes: Dict[str, Any]) -> None:
        with self._lock:
            self._desired[address] = attributes

    def set_observed(self, address: str, attributes: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            if attributes is None:
                self._observed.pop(address, None)
            else:
                self._observed[address] = attributes

    def observed(self, address: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._observed.get(address)

    def lookup(self, ref: ResourceRef, referrer: Optional[str] = None) -> Any:
        """Value of a single reference."""
        with self._lock:
            desired = self._desired.get(ref.address)
            observed = self._observed.get(ref.address)

        if desired is not None:
            value = walk_path(desired, ref.path)
            if value is not _MISSING and not (self.strict and contains_unknown(value)):
                return value

        if observed is not None:
            value = walk_path(observed, ref.path)
            if value is not _MISSING:
                if self.strict and is_digest_marker(value):
                    raise ReferenceResolutionError(
                        f"{ref} refers to a sensitive value that is only stored as a digest",
                        context=ErrorContext(resource_id=referrer),
                        suggestions=["Run with refresh enabled so the value is read from the provider"]
                    )
                return value

        if self.strict:
            raise ReferenceResolutionError(
                f"Cannot resolve {ref}: attribute is not known",
                context=ErrorContext(resource_id=referrer)
            )
        return UNKNOWN

    def resolve(self, value: Any, referrer: Optional[str] = None) -> Any:
        """Return value with every resource reference resolved."""
        def replace(ref):
            if isinstance(ref, VariableRef):
                raise ReferenceResolutionError(
                    f"Variable {ref} was not bound before resolution",
                    context=ErrorContext(resource_id=referrer)
                )
            return self.lookup(ref, referrer)

        return substitute(value, replace)
