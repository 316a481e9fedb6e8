"""State file data models."""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from converge.utils.sensitive import mask, to_persisted

STATE_FORMAT_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RemoteState(BaseModel):
    """Last-known provider-side representation of a resource."""

    type: str = Field(..., description="Resource type (e.g., aws_s3_bucket)")
    physical_id: str = Field(..., description="Provider-assigned identifier")
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Observed attributes, including computed ones"
    )
    address: Optional[str] = Field(None, description="Logical address TYPE.NAME")
    dependencies: List[str] = Field(
        default_factory=list, description="Addresses this resource depended on when applied"
    )
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def name(self) -> Optional[str]:
        if self.address is None:
            return None
        return self.address.split(".", 1)[1]

    def bind(self, address: str, dependencies: List[str]) -> "RemoteState":
        """Attach the logical identity this remote object is tracked under."""
        return self.model_copy(update={
            "address": address,
            "dependencies": sorted(dependencies),
        })

    def masked_attributes(self) -> Dict[str, Any]:
        return mask(self.attributes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary; sensitive values become digests."""
        return {
            "type": self.type,
            "physical_id": self.physical_id,
            "attributes": to_persisted(self.attributes),
            "dependencies": list(self.dependencies),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, address: str, data: Dict[str, Any]) -> "RemoteState":
        return cls(
            type=data["type"],
            physical_id=data["physical_id"],
            attributes=data.get("attributes", {}),
            address=address,
            dependencies=data.get("dependencies", []),
            updated_at=datetime.fromisoformat(data["updated_at"]) if "updated_at" in data else utcnow(),
        )


class OutputState(BaseModel):
    """A resolved output value."""

    value: Any = None
    sensitive: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"value": to_persisted(self.value), "sensitive": self.sensitive}


class StateFile(BaseModel):
    """Machine-readable record of the last-applied remote state."""

    version: int = Field(STATE_FORMAT_VERSION, description="State file format version")
    serial: int = Field(0, description="Incremented on every save")
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    updated_at: datetime = Field(default_factory=utcnow)
    resources: Dict[str, RemoteState] = Field(default_factory=dict)
    outputs: Dict[str, OutputState] = Field(default_factory=dict)

    def get_resource(self, address: str) -> Optional[RemoteState]:
        return self.resources.get(address)

    def has_resource(self, address: str) -> bool:
        return address in self.resources

    def set_resource(self, remote: RemoteState) -> None:
        if remote.address is None:
            raise ValueError("Remote state must be bound to an address before it is recorded")
        self.resources[remote.address] = remote
        self.updated_at = utcnow()

    def remove_resource(self, address: str) -> Optional[RemoteState]:
        removed = self.resources.pop(address, None)
        self.updated_at = utcnow()
        return removed

    def addresses(self) -> List[str]:
        return list(self.resources)

    def copy_resources(self) -> Dict[str, RemoteState]:
        return dict(self.resources)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": self.version,
            "serial": self.serial,
            "lineage": self.lineage,
            "updated_at": self.updated_at.isoformat(),
            "resources": {
                address: remote.to_dict() for address, remote in self.resources.items()
            },
            "outputs": {name: output.to_dict() for name, output in self.outputs.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateFile":
        """Create StateFile from dictionary."""
        return cls(
            version=data.get("version", STATE_FORMAT_VERSION),
            serial=data.get("serial", 0),
            lineage=data.get("lineage") or str(uuid.uuid4()),
            updated_at=datetime.fromisoformat(data["updated_at"]) if "updated_at" in data else utcnow(),
            resources={
                address: RemoteState.from_dict(address, resource)
                for address, resource in data.get("resources", {}).items()
            },
            outputs={
                name: OutputState(**output) for name, output in data.get("outputs", {}).items()
            },
        )
