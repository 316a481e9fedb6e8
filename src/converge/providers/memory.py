"""In-memory provider for local runs and tests."""

import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from converge.providers.base import ProviderClient
from converge.state.models import RemoteState
from converge.utils.errors import ErrorContext, ProviderFatalError, ProviderTransientError
from converge.utils.logging import get_logger
from converge.utils.sensitive import DIGEST_KEY, digest_value, secret_registry

logger = get_logger(__name__)

# Attributes used as the physical id, in order of preference
NAMING_ATTRIBUTES = ("bucket", "name", "role_name", "application_name")

COMPUTED_ATTRIBUTES = ("id", "arn")


def _scrub(value: Any) -> Any:
    """Replace registered secrets with digest markers before writing to disk."""
    if isinstance(value, str) and secret_registry.is_secret(value):
        return {DIGEST_KEY: digest_value(value)}
    if isinstance(value, dict):
        return {key: _scrub(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_scrub(item) for item in value]
    return value


@dataclass
class Fault:
    """A failure the provider injects into matching calls."""

    operation: str
    resource_type: Optional[str] = None
    match: Optional[Dict[str, Any]] = None
    transient: bool = False
    times: Optional[int] = None
    message: str = "injected failure"

    def matches(self, operation: str, resource_type: str, attributes: Dict[str, Any]) -> bool:
        if self.times is not None and self.times <= 0:
            return False
        if self.operation not in ("*", operation):
            return False
        if self.resource_type is not None and self.resource_type != resource_type:
            return False
        for key, value in (self.match or {}).items():
            if attributes.get(key) != value:
                return False
        return True


class InMemoryProvider(ProviderClient):
    """Keeps remote objects in a dictionary, optionally persisted to JSON.

    Physical ids come from a naming attribute when one is declared, so
    objects survive across runs under a stable id. ``id`` and ``arn`` are
    computed on create. Faults can be injected per operation and attribute
    match to exercise retry and partial-failure paths.
    """

    name = "memory"

    def __init__(
        self,
        region: str = "us-east-1",
        account_id: str = "000000000000",
        persist_path: Optional[str] = None,
        latency: float = 0.0
    ):
        """Initialize the provider.

        Args:
            region: Region used in computed ARNs
            account_id: Account used in computed ARNs
            persist_path: JSON file to load objects from and save them to
            latency: Seconds each operation takes
        """
        self.region = region
        self.account_id = account_id
        self.persist_path = Path(persist_path) if persist_path else None
        self.latency = latency
        self.objects: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str, str]] = []
        self.faults: List[Fault] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._counter = 0
        self._lock = threading.Lock()

        if self.persist_path and self.persist_path.exists():
            self._load()

    def add_fault(
        self,
        operation: str,
        resource_type: Optional[str] = None,
        match: Optional[Dict[str, Any]] = None,
        transient: bool = False,
        times: Optional[int] = None,
        message: str = "injected failure"
    ) -> Fault:
        """Make matching calls fail.

        Args:
            operation: describe, create, update, delete or * for any
            resource_type: Only fail calls for this type
            match: Only fail calls whose attributes contain these items
            transient: Raise ProviderTransientError instead of ProviderFatalError
            times: Number of calls to fail; None fails every matching call
            message: Error message
        """
        fault = Fault(operation, resource_type, match, transient, times, message)
        self.faults.append(fault)
        return fault

    def describe(self, resource_type: str, physical_id: str) -> Optional[RemoteState]:
        with self._operation("describe", resource_type, physical_id) as stored:
            if stored is None:
                return None
            return self._to_remote(resource_type, physical_id, stored)

    def create(self, resource_type: str, attributes: Dict[str, Any]) -> RemoteState:
        physical_id = self._physical_id(resource_type, attributes)
        with self._operation("create", resource_type, physical_id, attributes) as stored:
            if stored is not None:
                raise ProviderFatalError(
                    f"{resource_type} '{physical_id}' already exists",
                    context=ErrorContext(resource_type=resource_type, operation="create")
                )
            record = dict(attributes)
            record["id"] = physical_id
            record["arn"] = self._arn(resource_type, physical_id)
            with self._lock:
                self.objects[(resource_type, physical_id)] = record
                self._save()
            return self._to_remote(resource_type, physical_id, record)

    def update(self, resource_type: str, physical_id: str, attributes: Dict[str, Any]) -> RemoteState:
        with self._operation("update", resource_type, physical_id, attributes) as stored:
            if stored is None:
                raise ProviderFatalError(
                    f"{resource_type} '{physical_id}' does not exist",
                    context=ErrorContext(resource_type=resource_type, operation="update")
                )
            record = dict(attributes)
            for key in COMPUTED_ATTRIBUTES:
                record[key] = stored[key]
            with self._lock:
                self.objects[(resource_type, physical_id)] = record
                self._save()
            return self._to_remote(resource_type, physical_id, record)

    def delete(self, resource_type: str, physical_id: str) -> None:
        with self._operation("delete", resource_type, physical_id):
            with self._lock:
                self.objects.pop((resource_type, physical_id), None)
                self._save()

    def _operation(self, operation: str, resource_type: str, physical_id: str,
                   attributes: Optional[Dict[str, Any]] = None):
        return _Operation(self, operation, resource_type, physical_id, attributes)

    def _check_faults(self, operation: str, resource_type: str, attributes: Dict[str, Any]) -> None:
        with self._lock:
            fault = next(
                (f for f in self.faults if f.matches(operation, resource_type, attributes)),
                None
            )
            if fault is None:
                return
            if fault.times is not None:
                fault.times -= 1

        context = ErrorContext(resource_type=resource_type, operation=operation)
        if fault.transient:
            raise ProviderTransientError(fault.message, context=context)
        raise ProviderFatalError(fault.message, context=context)

    def _physical_id(self, resource_type: str, attributes: Dict[str, Any]) -> str:
        for key in NAMING_ATTRIBUTES:
            value = attributes.get(key)
            if isinstance(value, str) and value:
                return value
        with self._lock:
            self._counter += 1
            return f"{resource_type.replace('_', '-')}-{self._counter:04d}"

    def _arn(self, resource_type: str, physical_id: str) -> str:
        parts = resource_type.split("_")
        service = parts[1] if len(parts) > 1 and parts[0] == "aws" else parts[0]
        if service == "s3":
            return f"arn:aws:s3:::{physical_id}"
        kind = "_".join(parts[2:]) or resource_type
        return f"arn:aws:{service}:{self.region}:{self.account_id}:{kind}/{physical_id}"

    def _to_remote(self, resource_type: str, physical_id: str, record: Dict[str, Any]) -> RemoteState:
        return RemoteState(type=resource_type, physical_id=physical_id, attributes=dict(record))

    def _load(self) -> None:
        data = json.loads(self.persist_path.read_text(encoding="utf-8"))
        for entry in data.get("objects", []):
            self.objects[(entry["type"], entry["physical_id"])] = entry["attributes"]
        self._counter = data.get("counter", 0)
        logger.debug(f"Loaded {len(self.objects)} objects from {self.persist_path}")

    def _save(self) -> None:
        # Caller holds self._lock
        if self.persist_path is None:
            return
        self.persist_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "counter": self._counter,
            "objects": [
                {"type": resource_type, "physical_id": physical_id, "attributes": _scrub(record)}
                for (resource_type, physical_id), record in self.objects.items()
            ],
        }
        temp_path = self.persist_path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        temp_path.replace(self.persist_path)


class _Operation:
    """Bookkeeping around a single provider call."""

    def __init__(self, provider: InMemoryProvider, operation: str, resource_type: str,
                 physical_id: str, attributes: Optional[Dict[str, Any]]):
        self.provider = provider
        self.operation = operation
        self.resource_type = resource_type
        self.physical_id = physical_id
        self.attributes = attributes

    def __enter__(self) -> Optional[Dict[str, Any]]:
        provider = self.provider
        with provider._lock:
            provider.calls.append((self.operation, self.resource_type, self.physical_id))
            provider.in_flight += 1
            provider.max_in_flight = max(provider.max_in_flight, provider.in_flight)
            stored = provider.objects.get((self.resource_type, self.physical_id))

        if provider.latency:
            time.sleep(provider.latency)

        attributes = self.attributes if self.attributes is not None else (stored or {})
        try:
            provider._check_faults(self.operation, self.resource_type, attributes)
        except Exception:
            self._leave()
            raise
        return dict(stored) if stored is not None else None

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._leave()
        return False

    def _leave(self) -> None:
        with self.provider._lock:
            self.provider.in_flight -= 1
