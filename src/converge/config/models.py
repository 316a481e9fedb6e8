"""Pydantic models for the configuration document and engine settings."""

from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from converge.config.expressions import (
    IDENTIFIER_PATTERN,
    ResourceRef,
    VariableRef,
    is_address,
    iter_references,
)

IDENTIFIER_REGEX = IDENTIFIER_PATTERN.pattern


class VariableType(str, Enum):
    """Declared type of a variable."""
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    MAP = "map"
    ANY = "any"


class VariableDeclaration(BaseModel):
    """A variable placeholder declared by the document."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., pattern=IDENTIFIER_REGEX)
    type: VariableType = VariableType.ANY
    default: Any = None
    has_default: bool = False
    sensitive: bool = False
    description: str = ""


class ResourceDeclaration(BaseModel):
    """Desired state of a single resource."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: str = Field(..., pattern=IDENTIFIER_REGEX)
    name: str = Field(..., pattern=IDENTIFIER_REGEX)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    depends_on: Tuple[str, ...] = ()
    index: int = Field(0, ge=0, description="Position in the document")

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        """Validate explicit dependencies are resource addresses."""
        for address in v:
            if not is_address(address):
                raise ValueError(f"depends_on entry is not a resource address: {address}")
        return v

    @property
    def address(self) -> str:
        return f"{self.type}.{self.name}"

    def references(self) -> List[ResourceRef]:
        """Resource references found in the attributes, in document order."""
        return [ref for ref in iter_references(self.attributes) if isinstance(ref, ResourceRef)]

    def variable_references(self) -> List[VariableRef]:
        return [ref for ref in iter_references(self.attributes) if isinstance(ref, VariableRef)]

    def inferred_dependencies(self) -> List[str]:
        seen = []
        for ref in self.references():
            if ref.address not in seen:
                seen.append(ref.address)
        return seen

    def dependencies(self) -> Set[str]:
        """Explicit and inferred dependencies."""
        return set(self.depends_on) | set(self.inferred_dependencies())


class OutputDeclaration(BaseModel):
    """A value exported into the state file after apply."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(..., pattern=IDENTIFIER_REGEX)
    value: Any = None
    sensitive: bool = False
    description: str = ""


class RetrySettings(BaseModel):
    """Backoff settings for transient provider errors."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(5, ge=0, le=20)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(30.0, ge=0)
    exponential_base: float = Field(2.0, ge=1)
    jitter: bool = True


class EngineSettings(BaseModel):
    """Engine settings read from the document's settings block."""

    model_config = ConfigDict(extra="forbid")

    provider: str = Field("memory", pattern="^(memory|aws)$")
    region: Optional[str] = None
    profile: Optional[str] = None
    parallelism: int = Field(4, ge=1, le=64)
    state_path: str = Field(".converge/state/default.json", min_length=1)
    provider_state_path: Optional[str] = Field(
        None, description="File the memory provider persists its objects to"
    )
    fail_fast: bool = False
    retry: RetrySettings = Field(default_factory=RetrySettings)

    def with_overrides(self, **overrides: Any) -> "EngineSettings":
        """Return a copy with every non-None override applied."""
        values = {key: value for key, value in overrides.items() if value is not None}
        if not values:
            return self
        return self.model_validate({**self.model_dump(), **values})


class Document(BaseModel):
    """A parsed configuration document."""

    model_config = ConfigDict(frozen=True)

    settings: EngineSettings = Field(default_factory=EngineSettings)
    variables: Dict[str, VariableDeclaration] = Field(default_factory=dict)
    resources: List[ResourceDeclaration] = Field(default_factory=list)
    outputs: Dict[str, OutputDeclaration] = Field(default_factory=dict)
    source: Optional[str] = None

    def get_resource(self, address: str) -> Optional[ResourceDeclaration]:
        for resource in self.resources:
            if resource.address == address:
                return resource
        return None

    def has_resource(self, address: str) -> bool:
        return self.get_resource(address) is not None

    def addresses(self) -> List[str]:
        """Resource addresses in declaration order."""
        return [resource.address for resource in self.resources]
