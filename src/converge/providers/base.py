"""Provider client interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from converge.state.models import RemoteState


class ProviderClient(ABC):
    """Capability set the reconciler needs from a cloud provider.

    Implementations report failures as ProviderTransientError (worth
    retrying) or ProviderFatalError. Attribute values passed in are plain
    values: sensitive wrappers are removed before the call.
    """

    name = "provider"

    @abstractmethod
    def describe(self, resource_type: str, physical_id: str) -> Optional[RemoteState]:
        """Fetch the current state of a resource.

        Args:
            resource_type: Resource type (e.g., aws_s3_bucket)
            physical_id: Provider-assigned identifier

        Returns:
            Current remote state, or None if the resource does not exist
        """
        pass

    @abstractmethod
    def create(self, resource_type: str, attributes: Dict[str, Any]) -> RemoteState:
        """Create a resource.

        Args:
            resource_type: Resource type
            attributes: Desired attributes

        Returns:
            Remote state with physical_id and computed attributes
        """
        pass

    @abstractmethod
    def update(self, resource_type: str, physical_id: str, attributes: Dict[str, Any]) -> RemoteState:
        """Update a resource in place.

        Args:
            resource_type: Resource type
            physical_id: Provider-assigned identifier
            attributes: Desired attributes

        Returns:
            Remote state after the update
        """
        pass

    @abstractmethod
    def delete(self, resource_type: str, physical_id: str) -> None:
        """Delete a resource. Deleting a missing resource is not an error.

        Args:
            resource_type: Resource type
            physical_id: Provider-assigned identifier
        """
        pass

    def supports(self, resource_type: str) -> bool:
        """Whether this provider can manage the resource type."""
        return True
