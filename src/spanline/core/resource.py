# src/spanline/core/resource.py
"""Resource descriptor: static metadata identifying the producing process.

The Resource is built once at startup, shared by reference with every
exported batch, and never mutated. Detectors discover what they can about
the environment (service, process, host, container, Kubernetes); explicit
configuration is merged last and wins on conflicts (upsert semantics).

Usage:
    resource = build_resource(settings)
    resource["service.name"]  # "checkout"
"""

from __future__ import annotations

import os
import platform
import re
import socket
import sys
import uuid
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol

from spanline.contracts.attributes import AttributeValue, clean_attributes
from spanline.core.logging import get_logger

if TYPE_CHECKING:
    from spanline.core.config import TelemetrySettings

logger = get_logger(__name__)

SDK_NAME = "spanline"
SDK_LANGUAGE = "python"

# container id: 64 hex chars anywhere in a cgroup path segment
_CONTAINER_ID_RE = re.compile(r"([0-9a-f]{64})")

_CGROUP_PATHS: tuple[str, ...] = ("/proc/self/cgroup", "/proc/self/mountinfo")


class Resource(Mapping[str, AttributeValue]):
    """Immutable mapping of resource attributes.

    Behaves as a read-only Mapping. merge() returns a new Resource.
    """

    __slots__ = ("_attributes", "schema_url")

    def __init__(self, attributes: Mapping[str, Any] | None = None, schema_url: str = "") -> None:
        self._attributes: Mapping[str, AttributeValue] = MappingProxyType(clean_attributes(attributes))
        self.schema_url = schema_url

    def __getitem__(self, key: str) -> AttributeValue:
        return self._attributes[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._attributes)

    def __len__(self) -> int:
        return len(self._attributes)

    def __repr__(self) -> str:
        return f"Resource({dict(self._attributes)!r})"

    def __setattr__(self, name: str, value: Any) -> None:
        if hasattr(self, "schema_url"):
            raise AttributeError("Resource is immutable")
        object.__setattr__(self, name, value)

    def merge(self, other: Resource) -> Resource:
        """Merge with another resource; other's attributes win on conflict."""
        merged = {**self._attributes, **other._attributes}
        return Resource(merged, schema_url=other.schema_url or self.schema_url)

    @classmethod
    def empty(cls) -> Resource:
        return cls({})


class ResourceDetector(Protocol):
    """Something that can discover resource attributes.

    Detectors MUST NOT raise - an undetectable environment yields an empty
    Resource.
    """

    def detect(self) -> Resource: ...


class SDKResourceDetector:
    """telemetry.sdk.* attributes."""

    def detect(self) -> Resource:
        from spanline import __version__

        return Resource(
            {
                "telemetry.sdk.name": SDK_NAME,
                "telemetry.sdk.language": SDK_LANGUAGE,
                "telemetry.sdk.version": __version__,
            }
        )


class ProcessResourceDetector:
    """Process id, executable and runtime attributes."""

    def detect(self) -> Resource:
        return Resource(
            {
                "process.pid": os.getpid(),
                "process.executable.path": sys.executable,
                "process.runtime.name": sys.implementation.name,
                "process.runtime.version": platform.python_version(),
            }
        )


class HostResourceDetector:
    """Host name, architecture and operating system."""

    def detect(self) -> Resource:
        attributes: dict[str, Any] = {
            "host.arch": platform.machine(),
            "os.type": platform.system().lower(),
            "os.description": platform.platform(),
        }
        try:
            attributes["host.name"] = socket.gethostname()
        except OSError as e:
            logger.debug("Host name detection failed", error=str(e))
        return Resource(attributes)


class ContainerResourceDetector:
    """Container id from cgroup files, when running in a container."""

    def __init__(self, cgroup_paths: Iterable[str] = _CGROUP_PATHS) -> None:
        self._cgroup_paths = tuple(cgroup_paths)

    def detect(self) -> Resource:
        container_id = self._detect_container_id()
        if container_id is None:
            return Resource.empty()
        return Resource({"container.id": container_id})

    def _detect_container_id(self) -> str | None:
        for path in self._cgroup_paths:
            try:
                with open(path, encoding="utf-8") as f:
                    for line in f:
                        match = _CONTAINER_ID_RE.search(line)
                        if match:
                            return match.group(1)
            except OSError:
                continue
        return None


class KubernetesResourceDetector:
    """Pod/namespace/node attributes from downward-API environment variables.

    Only active when KUBERNETES_SERVICE_HOST is present.
    """

    _ENV_MAPPING: tuple[tuple[str, str], ...] = (
        ("K8S_POD_NAME", "k8s.pod.name"),
        ("K8S_POD_UID", "k8s.pod.uid"),
        ("K8S_NAMESPACE_NAME", "k8s.namespace.name"),
        ("K8S_NODE_NAME", "k8s.node.name"),
        ("K8S_DEPLOYMENT_NAME", "k8s.deployment.name"),
    )

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = os.environ if environ is None else environ

    def detect(self) -> Resource:
        if "KUBERNETES_SERVICE_HOST" not in self._environ:
            return Resource.empty()
        attributes = {key: self._environ[env] for env, key in self._ENV_MAPPING if self._environ.get(env)}
        if "k8s.pod.name" not in attributes and self._environ.get("HOSTNAME"):
            attributes["k8s.pod.name"] = self._environ["HOSTNAME"]
        return Resource(attributes)


class ServiceResourceDetector:
    """service.* and deployment.environment from configuration."""

    def __init__(
        self,
        service_name: str,
        service_version: str | None = None,
        deployment_environment: str | None = None,
        service_namespace: str | None = None,
    ) -> None:
        self._service_name = service_name
        self._service_version = service_version
        self._deployment_environment = deployment_environment
        self._service_namespace = service_namespace

    def detect(self) -> Resource:
        attributes: dict[str, Any] = {
            "service.name": self._service_name,
            "service.instance.id": str(uuid.uuid4()),
        }
        if self._service_version:
            attributes["service.version"] = self._service_version
        if self._service_namespace:
            attributes["service.namespace"] = self._service_namespace
        if self._deployment_environment:
            attributes["deployment.environment"] = self._deployment_environment
        return Resource(attributes)


def detect_resource(detectors: Iterable[ResourceDetector]) -> Resource:
    """Merge the output of several detectors, later detectors winning.

    A detector that raises is skipped and logged; detection never prevents
    startup.
    """
    resource = Resource.empty()
    for detector in detectors:
        try:
            resource = resource.merge(detector.detect())
        except Exception as e:
            logger.warning(
                "Resource detector failed",
                detector=type(detector).__name__,
                error=str(e),
            )
    return resource


def build_resource(settings: TelemetrySettings) -> Resource:
    """Build the process Resource from settings.

    Order (last wins): SDK, process, host, container, Kubernetes, service,
    then explicit service.resource_attributes.
    """
    service = settings.service
    detectors: list[ResourceDetector] = [SDKResourceDetector()]
    if service.detect_environment:
        detectors.extend(
            [
                ProcessResourceDetector(),
                HostResourceDetector(),
                ContainerResourceDetector(),
                KubernetesResourceDetector(),
            ]
        )
    detectors.append(
        ServiceResourceDetector(
            service_name=service.name,
            service_version=service.version,
            deployment_environment=service.environment,
            service_namespace=service.namespace,
        )
    )
    resource = detect_resource(detectors)
    if service.resource_attributes:
        resource = resource.merge(Resource(service.resource_attributes))
    logger.debug("Resource built", attribute_count=len(resource), service_name=resource.get("service.name"))
    return resource
