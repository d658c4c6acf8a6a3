"""
ObservaStock - Resource Descriptor

Identity of the emitting process. Built once at startup and shared by
reference with the trace, metric and log providers so every record carries
the same service attributes.
"""

import os
import socket
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from opentelemetry.sdk.resources import (
    Resource,
    SERVICE_NAME,
    SERVICE_VERSION,
    SERVICE_INSTANCE_ID,
    DEPLOYMENT_ENVIRONMENT,
)

from ..config import get_environment_name
from ..errors import InvalidArgumentError

Scalar = Union[str, bool, int, float]


def _default_instance_id() -> str:
    return os.getenv("SERVICE_INSTANCE_ID") or socket.gethostname()


@dataclass(frozen=True)
class ResourceDescriptor:
    """
    Immutable service identity.

    Attributes keep their insertion order; the mapping is read-only once the
    descriptor is created.
    """
    service_name: str
    service_version: str = "1.0.0"
    environment: str = "development"
    instance_id: str = ""
    attributes: Mapping[str, Scalar] = field(default_factory=dict)

    def __post_init__(self):
        if not self.service_name or not self.service_name.strip():
            raise InvalidArgumentError(
                "service_name must be a non-empty string",
                param="service_name",
            )
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @classmethod
    def create(
        cls,
        service_name: str,
        service_version: str = "1.0.0",
        environment: Optional[str] = None,
        instance_id: Optional[str] = None,
        attributes: Optional[Dict[str, Scalar]] = None,
    ) -> "ResourceDescriptor":
        """
        Create a descriptor, filling environment and instance id from the
        process when not given.
        """
        return cls(
            service_name=service_name,
            service_version=service_version,
            environment=environment or get_environment_name(),
            instance_id=instance_id or _default_instance_id(),
            attributes=attributes or {},
        )

    def as_attributes(self) -> Dict[str, Any]:
        """
        Flatten into OpenTelemetry resource attributes.

        The identity fields always win over extra attributes with the same key.
        """
        result: Dict[str, Any] = dict(self.attributes)
        result[SERVICE_NAME] = self.service_name
        result[SERVICE_VERSION] = self.service_version
        result[DEPLOYMENT_ENVIRONMENT] = self.environment
        if self.instance_id:
            result[SERVICE_INSTANCE_ID] = self.instance_id
        else:
            result.pop(SERVICE_INSTANCE_ID, None)
        return result

    def to_resource(self) -> Resource:
        """Build the SDK resource stamped on every exported record."""
        return Resource.create(self.as_attributes())
