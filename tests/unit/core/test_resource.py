# tests/unit/core/test_resource.py
"""Unit tests for Resource and resource detection.

Tests cover:
- Immutability and Mapping behavior
- merge() upsert semantics
- Individual detectors (container, Kubernetes)
- build_resource ordering: explicit configuration wins
- Failing detectors never prevent startup
"""

from pathlib import Path

import pytest

from spanline.core.config import TelemetrySettings
from spanline.core.resource import (
    ContainerResourceDetector,
    KubernetesResourceDetector,
    Resource,
    build_resource,
    detect_resource,
)


class TestResource:
    def test_behaves_as_read_only_mapping(self) -> None:
        resource = Resource({"service.name": "svc", "bad": object()})

        assert dict(resource) == {"service.name": "svc"}
        assert len(resource) == 1
        with pytest.raises(TypeError):
            resource["x"] = "y"  # type: ignore[index]

    def test_attributes_cannot_be_reassigned(self) -> None:
        resource = Resource({"a": 1})
        with pytest.raises(AttributeError, match="immutable"):
            resource.schema_url = "https://example.com"

    def test_merge_other_wins(self) -> None:
        base = Resource({"a": 1, "b": 2})
        merged = base.merge(Resource({"b": 3, "c": 4}))

        assert dict(merged) == {"a": 1, "b": 3, "c": 4}
        assert dict(base) == {"a": 1, "b": 2}


class TestDetectors:
    def test_container_id_from_cgroup(self, tmp_path: Path) -> None:
        container_id = "a" * 64
        cgroup = tmp_path / "cgroup"
        cgroup.write_text(f"0::/system.slice/docker-{container_id}.scope\n")

        resource = ContainerResourceDetector([str(cgroup)]).detect()
        assert resource["container.id"] == container_id

    def test_no_container_outside_containers(self, tmp_path: Path) -> None:
        cgroup = tmp_path / "cgroup"
        cgroup.write_text("0::/user.slice\n")
        assert len(ContainerResourceDetector([str(cgroup), str(tmp_path / "missing")]).detect()) == 0

    def test_kubernetes_requires_service_host(self) -> None:
        assert len(KubernetesResourceDetector({"K8S_POD_NAME": "pod-1"}).detect()) == 0

    def test_kubernetes_attributes(self) -> None:
        resource = KubernetesResourceDetector(
            {
                "KUBERNETES_SERVICE_HOST": "10.0.0.1",
                "K8S_NAMESPACE_NAME": "payments",
                "HOSTNAME": "checkout-7f9c",
            }
        ).detect()

        assert resource["k8s.namespace.name"] == "payments"
        assert resource["k8s.pod.name"] == "checkout-7f9c"

    def test_failing_detector_is_skipped(self) -> None:
        class Broken:
            def detect(self) -> Resource:
                raise RuntimeError("boom")

        class Working:
            def detect(self) -> Resource:
                return Resource({"ok": True})

        assert dict(detect_resource([Broken(), Working()])) == {"ok": True}


class TestBuildResource:
    def test_service_attributes(self) -> None:
        settings = TelemetrySettings(
            service={"name": "checkout", "version": "1.2.3", "environment": "prod", "detect_environment": False},  # type: ignore[arg-type]
        )
        resource = build_resource(settings)

        assert resource["service.name"] == "checkout"
        assert resource["service.version"] == "1.2.3"
        assert resource["deployment.environment"] == "prod"
        assert resource["telemetry.sdk.name"] == "spanline"
        assert "service.instance.id" in resource
        assert "process.pid" not in resource

    def test_environment_detectors_run_by_default(self) -> None:
        resource = build_resource(TelemetrySettings())
        assert "process.pid" in resource
        assert "host.arch" in resource

    def test_explicit_attributes_win(self) -> None:
        settings = TelemetrySettings(
            service={  # type: ignore[arg-type]
                "name": "checkout",
                "detect_environment": False,
                "resource_attributes": {"service.name": "override", "team": "payments"},
            },
        )
        resource = build_resource(settings)

        assert resource["service.name"] == "override"
        assert resource["team"] == "payments"
