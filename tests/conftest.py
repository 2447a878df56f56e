"""Shared fixtures: an in-memory cluster standing in for the typed and raw APIs."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from deployments_backend.kube_client import DEPLOYMENT_PHASE_ANNOTATION, KubeClient
from deployments_backend.kube_types import KubeClientConfig

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

TEST_CONFIG = KubeClientConfig(
    cluster_url="https://api.cluster.example.com",
    bearer_token="user-token",
    user_namespace="myuser",
    timeout=5,
)


def at(minutes: int) -> datetime:
    """A creation timestamp ``minutes`` after the base time."""
    return BASE_TIME + timedelta(minutes=minutes)


def owner_ref(uid: str, controller: bool | None = True, kind: str = "DeploymentConfig") -> client.V1OwnerReference:
    return client.V1OwnerReference(api_version="v1", kind=kind, name=f"owner-{uid}", uid=uid, controller=controller)


def make_rc(
    uid: str,
    dc_uid: str,
    created: datetime,
    replicas: int = 0,
    phase: str | None = None,
    controller: bool | None = True,
) -> client.V1ReplicationController:
    annotations = {DEPLOYMENT_PHASE_ANNOTATION: phase} if phase else None
    return client.V1ReplicationController(
        metadata=client.V1ObjectMeta(
            name=f"rc-{uid}",
            uid=uid,
            creation_timestamp=created,
            annotations=annotations,
            owner_references=[owner_ref(dc_uid, controller)],
        ),
        status=client.V1ReplicationControllerStatus(replicas=replicas),
    )


def make_pod(
    name: str,
    rc_uid: str,
    phase: str,
    deleting: bool = False,
    controller: bool | None = True,
    app: str = "myapp",
    namespace: str = "myuser-run",
    restarts: int = 0,
) -> client.V1Pod:
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=f"uid-{name}",
            labels={"app": app},
            creation_timestamp=at(10),
            deletion_timestamp=BASE_TIME if deleting else None,
            owner_references=[owner_ref(rc_uid, controller, kind="ReplicationController")],
        ),
        spec=client.V1PodSpec(containers=[client.V1Container(name=app)], node_name="node-1"),
        status=client.V1PodStatus(
            phase=phase,
            container_statuses=[
                client.V1ContainerStatus(name=app, image=f"{app}:latest", image_id="", ready=True,
                                         restart_count=restarts),
            ],
        ),
    )


def make_service(name: str, app: str) -> client.V1Service:
    return client.V1Service(metadata=client.V1ObjectMeta(name=name, labels={"app": app}))


def make_route(name: str, app: str) -> dict[str, Any]:
    return {"kind": "Route", "metadata": {"name": name, "labels": {"app": app}}}


def make_scale(name: str, replicas: int | None) -> dict[str, Any]:
    spec = {"replicas": replicas} if replicas is not None else {}
    return {"kind": "Scale", "apiVersion": "extensions/v1beta1", "metadata": {"name": name}, "spec": spec}


def matches_selector(labels: dict[str, str] | None, label_selector: str | None) -> bool:
    if not label_selector:
        return True
    key, _, value = label_selector.partition("=")
    return (labels or {}).get(key) == value


def make_config_map(data: dict[str, str], provider: str | None = "fabric8") -> client.V1ConfigMap:
    labels = {"provider": provider} if provider else None
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(name="fabric8-environments", labels=labels),
        data=data,
    )


def make_quota(hard: dict[str, str], used: dict[str, str]) -> client.V1ResourceQuota:
    return client.V1ResourceQuota(
        metadata=client.V1ObjectMeta(name="compute-resources"),
        status=client.V1ResourceQuotaStatus(hard=hard, used=used),
    )


def make_build_config(name: str, space: str) -> dict[str, Any]:
    return {
        "kind": "BuildConfig",
        "metadata": {"name": name, "labels": {"space": space}},
    }


def make_deployment_config(name: str, uid: str, space: str, version: str | None = None) -> dict[str, Any]:
    labels = {"space": space}
    if version is not None:
        labels["version"] = version
    return {
        "kind": "DeploymentConfig",
        "metadata": {"name": name, "uid": uid, "labels": labels},
    }


class FakeKubeAPI:
    """The subset of CoreV1Api used by KubeClient."""

    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster
        self.api_client = MagicMock()

    @property
    def close_count(self) -> int:
        return self.api_client.close.call_count

    def read_namespaced_config_map(self, name: str, namespace: str, **kwargs: Any) -> client.V1ConfigMap:
        self.cluster.record("configmap", namespace, name, options=kwargs)
        if self.cluster.config_map is None:
            raise ApiException(status=404, reason="Not Found")
        return self.cluster.config_map

    def list_namespaced_replication_controller(self, namespace: str, **kwargs: Any):
        self.cluster.record("rcs", namespace, options=kwargs)
        return client.V1ReplicationControllerList(items=list(self.cluster.rcs.get(namespace, [])))

    def list_namespaced_pod(self, namespace: str, label_selector: str | None = None, **kwargs: Any):
        self.cluster.record("pods", namespace, options=kwargs)
        items = [
            pod for pod in self.cluster.pods.get(namespace, [])
            if matches_selector(pod.metadata.labels, label_selector)
        ]
        return client.V1PodList(items=items)

    def read_namespaced_resource_quota(self, name: str, namespace: str, **kwargs: Any):
        self.cluster.record("quota", namespace, name, options=kwargs)
        quota = self.cluster.quotas.get(namespace)
        if quota is None:
            raise ApiException(status=404, reason="Not Found")
        return quota

    def list_namespaced_service(self, namespace: str, label_selector: str | None = None, **kwargs: Any):
        self.cluster.record("services", namespace, options=kwargs)
        items = [
            svc for svc in self.cluster.services.get(namespace, [])
            if matches_selector(svc.metadata.labels, label_selector)
        ]
        return client.V1ServiceList(items=items)

    def delete_namespaced_service(self, name: str, namespace: str, **kwargs: Any) -> None:
        self.cluster.record("delete-service", namespace, name, options=kwargs)
        self.cluster.services[namespace] = [
            svc for svc in self.cluster.services.get(namespace, []) if svc.metadata.name != name
        ]


class FakeOpenShiftAPI:
    """The subset of OpenShiftAPIClient used by KubeClient."""

    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster
        self.close_count = 0

    def get_build_configs(self, namespace: str, label_selector: str) -> dict[str, Any]:
        self.cluster.record("buildconfigs", namespace, label_selector)
        key, _, value = label_selector.partition("=")
        items = [
            copy.deepcopy(bc)
            for bc in self.cluster.build_configs.get(namespace, [])
            if bc["metadata"].get("labels", {}).get(key) == value
        ]
        return {"kind": "BuildConfigList", "items": items}

    def get_deployment_config(self, namespace: str, name: str) -> dict[str, Any] | None:
        self.cluster.record("deploymentconfig", namespace, name)
        return copy.deepcopy(self.cluster.deployment_configs.get((namespace, name)))

    def delete_deployment_config(self, namespace: str, name: str) -> None:
        self.cluster.record("delete-deploymentconfig", namespace, name)
        del self.cluster.deployment_configs[(namespace, name)]

    def get_deployment_config_scale(self, namespace: str, name: str) -> dict[str, Any] | None:
        self.cluster.record("scale", namespace, name)
        return copy.deepcopy(self.cluster.scales.get((namespace, name)))

    def set_deployment_config_scale(self, namespace: str, name: str, scale: dict[str, Any]) -> None:
        self.cluster.record("set-scale", namespace, name)
        self.cluster.scales[(namespace, name)] = copy.deepcopy(scale)

    def get_routes(self, namespace: str, label_selector: str) -> dict[str, Any]:
        self.cluster.record("routes", namespace, label_selector)
        items = [
            copy.deepcopy(route)
            for route in self.cluster.routes.get(namespace, [])
            if matches_selector(route["metadata"].get("labels"), label_selector)
        ]
        return {"kind": "RouteList", "items": items}

    def delete_route(self, namespace: str, name: str) -> None:
        self.cluster.record("delete-route", namespace, name)
        self.cluster.routes[namespace] = [
            route for route in self.cluster.routes.get(namespace, []) if route["metadata"]["name"] != name
        ]

    def close(self) -> None:
        self.close_count += 1


class FakeCluster:
    """Canned cluster state, keyed by namespace."""

    def __init__(self) -> None:
        self.config_map: client.V1ConfigMap | None = make_config_map({
            "run": "name: Run\nnamespace: myuser-run\norder: 2",
            "stage": "name: Stage\nnamespace: myuser-stage\norder: 1",
        })
        self.build_configs: dict[str, list[dict[str, Any]]] = {}
        self.deployment_configs: dict[tuple[str, str], dict[str, Any]] = {}
        self.rcs: dict[str, list[client.V1ReplicationController]] = {}
        self.pods: dict[str, list[client.V1Pod]] = {}
        self.quotas: dict[str, client.V1ResourceQuota] = {}
        self.services: dict[str, list[client.V1Service]] = {}
        self.routes: dict[str, list[dict[str, Any]]] = {}
        self.scales: dict[tuple[str, str], dict[str, Any]] = {}
        self.fail_with: Exception | None = None
        self.calls: list[tuple[str, ...]] = []
        # keyword arguments of typed API calls, in call order
        self.call_options: list[tuple[str, dict[str, Any]]] = []
        self.kube_api = FakeKubeAPI(self)
        self.openshift_api = FakeOpenShiftAPI(self)

    def record(self, *call: str, options: dict[str, Any] | None = None) -> None:
        self.calls.append(call)
        if options is not None:
            self.call_options.append((call[0], options))
        # The environments config map is read while the client is built
        if self.fail_with is not None and call[0] != "configmap":
            raise self.fail_with

    def client(self, config: KubeClientConfig = TEST_CONFIG) -> KubeClient:
        return KubeClient(config, kube_api=self.kube_api, openshift_api=self.openshift_api)

    @property
    def closed(self) -> bool:
        return self.kube_api.close_count == 1 and self.openshift_api.close_count == 1


@pytest.fixture
def cluster() -> FakeCluster:
    """A cluster with run and stage environments and nothing deployed."""
    return FakeCluster()


@pytest.fixture
def myspace_cluster(cluster: FakeCluster) -> FakeCluster:
    """
    Space "myspace" with app "myapp" deployed to the run environment.

    The current RC has 3 pods: two running and one pending. A decoy pod and
    an older RC owned by other controllers share the namespace.
    """
    cluster.build_configs["myuser"] = [
        make_build_config("myapp", "myspace"),
        make_build_config("otherapp", "otherspace"),
    ]
    cluster.deployment_configs[("myuser-run", "myapp")] = make_deployment_config("myapp", "dc-1", "myspace")
    cluster.rcs["myuser-run"] = [
        make_rc("rc-1", "dc-1", at(10), replicas=2),
        make_rc("rc-other", "dc-other", at(20), replicas=1),
    ]
    cluster.pods["myuser-run"] = [
        make_pod("myapp-1-a", "rc-1", "Running"),
        make_pod("myapp-1-b", "rc-1", "Running"),
        make_pod("myapp-1-c", "rc-1", "Pending"),
        make_pod("decoy", "rc-other", "Running", app="otherapp"),
    ]
    cluster.scales[("myuser-run", "myapp")] = make_scale("myapp", 2)
    cluster.routes["myuser-run"] = [make_route("myapp", "myapp"), make_route("otherapp", "otherapp")]
    cluster.services["myuser-run"] = [make_service("myapp", "myapp"), make_service("otherapp", "otherapp")]
    cluster.quotas["myuser-run"] = make_quota(
        hard={"limits.cpu": "2", "limits.memory": "1Gi"},
        used={"limits.cpu": "500m", "limits.memory": "256Mi"},
    )
    cluster.quotas["myuser-stage"] = make_quota(
        hard={"limits.cpu": "1", "limits.memory": "512Mi"},
        used={},
    )
    return cluster
