"""
Kubernetes/OpenShift client for space, application and environment status.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException

from deployments_backend.errors import (
    ClusterRequestError,
    EnvironmentConfigError,
    MalformedResponseError,
    ResourceQuotaNotFoundError,
    SpaceMismatchError,
    UnknownEnvironmentError,
)
from deployments_backend.kube_types import (
    CurrentDeployment,
    DeploymentConfigInfo,
    EnvStatCores,
    EnvStatMemory,
    EnvStatPods,
    EnvStats,
    KubeClientConfig,
    SimpleApp,
    SimpleDeployment,
    SimpleEnvironment,
    SimplePod,
    SimpleSpace,
)
from deployments_backend.quantity import int64_to_int32, milli_value, quantity_to_int32

logger = logging.getLogger(__name__)

# fabric8 creates this ConfigMap in the user namespace, one key per environment
ENVIRONMENTS_CONFIG_MAP = "fabric8-environments"
PROVIDER_LABEL = "fabric8"
NAMESPACE_PROPERTY = "namespace"

SPACE_LABEL = "space"
VERSION_LABEL = "version"
DEPLOYMENT_PHASE_ANNOTATION = "openshift.io/deployment.phase"
VISIBLE_DEPLOYMENT_PHASES = ("New", "Pending", "Running")

COMPUTE_RESOURCES_QUOTA = "compute-resources"
RESOURCE_LIMITS_CPU = "limits.cpu"
RESOURCE_LIMITS_MEMORY = "limits.memory"
MEMORY_UNITS = "bytes"

APP_LABEL = "app"
FOREGROUND_DELETE_OPTIONS = {
    "kind": "DeleteOptions",
    "apiVersion": "v1",
    "propagationPolicy": "Foreground",
}

_NO_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)


def oapi_path(namespace: str, resource: str, name: Optional[str] = None,
              subresource: Optional[str] = None) -> str:
    """Build an /oapi/v1 path, escaping each user-supplied segment."""
    path = f"/oapi/v1/namespaces/{quote(namespace, safe='')}/{resource}"
    if name is not None:
        path += f"/{quote(name, safe='')}"
    if subresource is not None:
        path += f"/{subresource}"
    return path


def _label_selector_query(label_selector: str) -> str:
    return f"?labelSelector={quote(label_selector, safe='')}"


class OpenShiftAPIClient:
    """Raw HTTP access to OpenShift objects that the typed client does not cover."""

    def __init__(self, config: KubeClientConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/yaml",
            "Authorization": f"Bearer {config.bearer_token}",
        })
        self.session.verify = config.verify_ssl

    def get_build_configs(self, namespace: str, label_selector: str) -> Dict[str, Any]:
        path = oapi_path(namespace, "buildconfigs") + _label_selector_query(label_selector)
        return self.get_resource(path, allow_missing=False)

    def get_deployment_config(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.get_resource(oapi_path(namespace, "deploymentconfigs", name), allow_missing=True)

    def delete_deployment_config(self, namespace: str, name: str) -> None:
        # Foreground propagation removes the RCs and pods before the DC itself
        self.send_resource(oapi_path(namespace, "deploymentconfigs", name), "DELETE", FOREGROUND_DELETE_OPTIONS)

    def get_deployment_config_scale(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self.get_resource(oapi_path(namespace, "deploymentconfigs", name, "scale"), allow_missing=True)

    def set_deployment_config_scale(self, namespace: str, name: str, scale: Dict[str, Any]) -> None:
        self.send_resource(oapi_path(namespace, "deploymentconfigs", name, "scale"), "PUT", scale)

    def get_routes(self, namespace: str, label_selector: str) -> Dict[str, Any]:
        path = oapi_path(namespace, "routes") + _label_selector_query(label_selector)
        return self.get_resource(path, allow_missing=False)

    def delete_route(self, namespace: str, name: str) -> None:
        self.send_resource(oapi_path(namespace, "routes", name), "DELETE", FOREGROUND_DELETE_OPTIONS)

    def get_resource(self, path: str, allow_missing: bool) -> Optional[Dict[str, Any]]:
        """
        GET a single resource and parse the YAML body.

        Args:
            path: API path, appended to the cluster URL
            allow_missing: Return None instead of failing on 404

        Returns:
            The parsed object, or None if it is missing and that is allowed
        """
        url = self.config.cluster_url.rstrip("/") + path
        try:
            response = self.session.get(url, timeout=self.config.timeout)
        except requests.RequestException as e:
            logger.error(f"Failed to GET {url}: {e}")
            raise

        status = response.status_code
        logger.debug(f"GET {url} -> {status}")
        if status == 404 and allow_missing:
            return None
        if status < 200 or status >= 300:
            raise ClusterRequestError(url, status)

        try:
            result = yaml.safe_load(response.content)
        except yaml.YAMLError as e:
            raise MalformedResponseError(f"malformed response from {url}: {e}") from e
        if not isinstance(result, dict):
            raise MalformedResponseError(f"malformed response from {url}")
        return result

    def send_resource(self, path: str, method: str, body: Optional[Dict[str, Any]] = None) -> None:
        """
        Send a JSON body with ``method`` and check the status.

        The response body is ignored; some endpoints return the object
        instead of the Status the API documents.
        """
        url = self.config.cluster_url.rstrip("/") + path
        try:
            response = self.session.request(
                method, url, json=body, headers={"Accept": "application/json"}, timeout=self.config.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Failed to {method} {url}: {e}")
            raise

        status = response.status_code
        logger.debug(f"{method} {url} -> {status}")
        if status < 200 or status >= 300:
            logger.error(f"❌ {method} {url} failed with status code {status}")
            raise ClusterRequestError(url, status, method=method)

    def close(self) -> None:
        self.session.close()


def new_kube_api(config: KubeClientConfig) -> client.CoreV1Api:
    """Build a typed CoreV1Api authenticated with the config's bearer token."""
    configuration = client.Configuration()
    configuration.host = config.cluster_url
    configuration.api_key = {"authorization": config.bearer_token}
    configuration.api_key_prefix = {"authorization": "Bearer"}
    configuration.verify_ssl = config.verify_ssl
    return client.CoreV1Api(client.ApiClient(configuration))


def get_environments_from_config_map(kube_api, user_namespace: str,
                                     timeout: Optional[float] = None) -> Dict[str, str]:
    """
    Map environment names to namespaces using the environments ConfigMap.

    Each value in the ConfigMap is a small ``key: value`` document that must
    carry a ``namespace`` line. A single entry without one fails the whole map.
    """
    configmap = kube_api.read_namespaced_config_map(
        ENVIRONMENTS_CONFIG_MAP, user_namespace, _request_timeout=timeout
    )
    labels = configmap.metadata.labels or {}
    if labels.get("provider") != PROVIDER_LABEL:
        raise EnvironmentConfigError("unknown or missing provider for environments config map")

    env_map = {}
    for key, value in (configmap.data or {}).items():
        namespace = ""
        for line in value.split("\n"):
            if line.startswith(NAMESPACE_PROPERTY):
                tokens = line.split(":", 1)
                if len(tokens) < 2:
                    raise EnvironmentConfigError("malformed environments config map")
                namespace = tokens[1].strip()
        if not namespace:
            raise EnvironmentConfigError(f"no namespace for environment {key} in config map")
        env_map[key] = namespace
    return env_map


def _get_mapping(obj: Dict[str, Any], key: str, description: str) -> Dict[str, Any]:
    value = obj.get(key)
    if not isinstance(value, dict):
        raise MalformedResponseError(f"{key} missing from {description}")
    return value


def _get_string(obj: Dict[str, Any], key: str, description: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedResponseError(f"{key} missing from {description}")
    return value


def parse_build_config_names(result: Dict[str, Any]) -> List[str]:
    """Extract BuildConfig names from a BuildConfigList."""
    if result.get("kind") != "BuildConfigList":
        raise MalformedResponseError("no build configs returned from endpoint")
    items = result.get("items")
    if items is None:
        # an empty list may be serialized as null
        items = []
    if not isinstance(items, list):
        raise MalformedResponseError("items missing from build config list")

    names = []
    for item in items:
        if not isinstance(item, dict):
            raise MalformedResponseError("malformed build config")
        metadata = _get_mapping(item, "metadata", "build config")
        names.append(_get_string(metadata, "name", "build config metadata"))
    return names


def parse_route_names(result: Dict[str, Any]) -> List[str]:
    """Extract Route names from a RouteList."""
    if result.get("kind") != "RouteList":
        raise MalformedResponseError("no routes returned from endpoint")
    items = result.get("items") or []
    if not isinstance(items, list):
        raise MalformedResponseError("items missing from route list")
    names = []
    for item in items:
        if not isinstance(item, dict):
            raise MalformedResponseError("malformed route")
        metadata = _get_mapping(item, "metadata", "route")
        names.append(_get_string(metadata, "name", "route metadata"))
    return names


def get_scale_replicas(scale: Dict[str, Any], name: str) -> int:
    """Read spec.replicas from a Scale object. A missing count means zero."""
    spec = _get_mapping(scale, "spec", f"scale of deployment config {name}")
    replicas = spec.get("replicas", 0)
    if isinstance(replicas, bool) or not isinstance(replicas, int):
        raise MalformedResponseError(f"replicas missing from scale of deployment config {name}")
    return replicas


def parse_deployment_config(result: Dict[str, Any], name: str) -> DeploymentConfigInfo:
    if result.get("kind") != "DeploymentConfig":
        raise MalformedResponseError("no deployment config returned from endpoint")
    description = f"deployment config {name}"
    metadata = _get_mapping(result, "metadata", description)
    labels = _get_mapping(metadata, "labels", description)
    space = _get_string(labels, SPACE_LABEL, f"labels of {description}")
    uid = _get_string(metadata, "uid", f"metadata of {description}")
    version = labels.get(VERSION_LABEL)
    return DeploymentConfigInfo(
        name=name,
        uid=uid,
        space=space,
        labels={str(k): str(v) for k, v in labels.items()},
        version=str(version) if version is not None else None,
    )


def is_controlled_by(obj, uid: str) -> bool:
    """Whether ``obj`` has a controller owner reference to ``uid``."""
    for ref in obj.metadata.owner_references or []:
        if ref.uid == uid and ref.controller:
            return True
    return False


def is_replication_controller_visible(rc) -> bool:
    """
    Whether the web console would show this RC.

    An RC is visible when it has replicas, or when its deployment is still
    in progress. Scaled-down, finished deployments are hidden.
    """
    if rc.status is not None and (rc.status.replicas or 0) > 0:
        return True
    annotations = rc.metadata.annotations or {}
    return annotations.get(DEPLOYMENT_PHASE_ANNOTATION) in VISIBLE_DEPLOYMENT_PHASES


def _creation_timestamp(obj) -> datetime:
    return obj.metadata.creation_timestamp or _NO_TIMESTAMP


def select_current_replication_controller(rcs: List[Any]) -> Optional[Any]:
    """Pick the newest visible RC, or None if none is visible."""
    newest = None
    for rc in rcs:
        if newest is None or _creation_timestamp(newest) < _creation_timestamp(rc):
            if is_replication_controller_visible(rc):
                newest = rc
    return newest


def get_pod_status(pods: List[Any]) -> EnvStatPods:
    """
    Count pods per lifecycle bucket.

    Terminating pods count as stopping whatever their phase. Other phases
    (Succeeded, Failed, Unknown) are only part of the total.
    """
    starting = running = stopping = 0
    for pod in pods:
        phase = pod.status.phase if pod.status is not None else None
        if pod.metadata.deletion_timestamp is not None:
            stopping += 1
        elif phase == "Pending":
            starting += 1
        elif phase == "Running":
            running += 1
    return EnvStatPods(starting=starting, running=running, stopping=stopping, total=len(pods))


def to_simple_pod(pod) -> SimplePod:
    restarts = 0
    if pod.status is not None:
        for container_status in pod.status.container_statuses or []:
            restarts += container_status.restart_count or 0
    return SimplePod(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        status=(pod.status.phase if pod.status is not None else None) or "Unknown",
        node=pod.spec.node_name if pod.spec is not None else None,
        restarts=restarts,
        created=pod.metadata.creation_timestamp,
        stopping=pod.metadata.deletion_timestamp is not None,
    )


class KubeClient:
    """
    Request-scoped view of one user's spaces, applications and environments.

    The environments ConfigMap is read once, when the client is built. Every
    client must be closed, which the context-manager protocol does:

        with KubeClient(config) as kc:
            space = kc.get_space("myspace")
    """

    def __init__(self, config: KubeClientConfig, kube_api=None, openshift_api=None):
        """
        Initialize the client and discover the user's environments.

        Args:
            config: Cluster URL, token and user namespace
            kube_api: Typed core API (default: CoreV1Api for ``config``)
            openshift_api: Raw OpenShift API (default: OpenShiftAPIClient)
        """
        self.config = config
        self._closed = False
        self.kube_api = kube_api if kube_api is not None else new_kube_api(config)
        self.openshift_api = openshift_api if openshift_api is not None else OpenShiftAPIClient(config)

        try:
            self.env_map = get_environments_from_config_map(
                self.kube_api, config.user_namespace, timeout=config.timeout
            )
        except Exception:
            self.close()
            raise
        logger.info(f"✅ Kube client initialized for namespace {config.user_namespace} "
                    f"with environments: {sorted(self.env_map)}")

    def __enter__(self) -> "KubeClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Release HTTP connections held by this client."""
        if self._closed:
            return
        self._closed = True
        try:
            self.openshift_api.close()
        finally:
            self.kube_api.api_client.close()
        logger.debug(f"Kube client for namespace {self.config.user_namespace} closed")

    def get_space(self, space_name: str) -> SimpleSpace:
        """Return the space with every application found for it."""
        # BuildConfigs created by fabric8 carry a "space" label
        build_configs = self.get_build_configs(space_name)
        applications = [self.get_application(space_name, bc) for bc in build_configs]
        return SimpleSpace(name=space_name, applications=applications)

    def get_application(self, space_name: str, app_name: str) -> SimpleApp:
        """Return the application with its current deployment in each environment."""
        deployments = []
        for env_name in self.env_map:
            deployment = self.get_deployment(space_name, app_name, env_name)
            if deployment is not None:
                deployments.append(deployment)
        return SimpleApp(name=app_name, pipeline=deployments)

    def get_deployment(self, space_name: str, app_name: str, env_name: str) -> Optional[SimpleDeployment]:
        """Return the current deployment of an app in an environment, or None if there is none."""
        env_ns = self.get_environment_namespace(env_name)
        current = self.get_current_deployment(space_name, app_name, env_ns)
        if current is None:
            return None

        stats = self.get_deployment_env_stats(env_ns, current.rc_uid)
        return SimpleDeployment(name=env_name, stats=stats, version=current.app_version)

    def scale_deployment(self, space_name: str, app_name: str, env_name: str, replicas: int) -> Optional[int]:
        """
        Set the replica count of an app's DeploymentConfig in an environment.

        Returns:
            The replica count before scaling, or None if the app has no
            DeploymentConfig (or no scale) in that environment
        """
        env_ns = self.get_environment_namespace(env_name)
        dc = self.get_deployment_config(env_ns, app_name, space_name)
        if dc is None:
            return None

        scale = self.openshift_api.get_deployment_config_scale(env_ns, app_name)
        if scale is None:
            logger.debug(f"No scale for deployment config {app_name} in namespace {env_ns}")
            return None
        old_replicas = get_scale_replicas(scale, app_name)

        scale["spec"]["replicas"] = replicas
        self.openshift_api.set_deployment_config_scale(env_ns, app_name, scale)
        logger.info(f"Scaled {app_name} in {env_ns} from {old_replicas} to {replicas} replicas")
        return old_replicas

    def get_pods_in_namespace(self, env_name: str, app_name: str) -> List[SimplePod]:
        """List the pods labelled with the app's name in an environment."""
        env_ns = self.get_environment_namespace(env_name)
        pods = self.kube_api.list_namespaced_pod(
            env_ns, label_selector=f"{APP_LABEL}={app_name}", _request_timeout=self.config.timeout
        )
        return [to_simple_pod(pod) for pod in pods.items]

    def delete_deployment(self, space_name: str, app_name: str, env_name: str) -> bool:
        """
        Delete an app from an environment: its routes, services and DeploymentConfig.

        Returns:
            False if the app has no DeploymentConfig in that environment
        """
        env_ns = self.get_environment_namespace(env_name)
        dc = self.get_deployment_config(env_ns, app_name, space_name)
        if dc is None:
            return False

        selector = f"{APP_LABEL}={app_name}"
        self.delete_routes(env_ns, selector)
        self.delete_services(env_ns, selector)
        self.openshift_api.delete_deployment_config(env_ns, app_name)
        logger.info(f"🗑️ Deleted {app_name} from namespace {env_ns}")
        return True

    def delete_routes(self, namespace: str, label_selector: str) -> None:
        result = self.openshift_api.get_routes(namespace, label_selector)
        for name in parse_route_names(result):
            self.openshift_api.delete_route(namespace, name)

    def delete_services(self, namespace: str, label_selector: str) -> None:
        services = self.kube_api.list_namespaced_service(
            namespace, label_selector=label_selector, _request_timeout=self.config.timeout
        )
        delete_options = client.V1DeleteOptions(propagation_policy="Foreground")
        for service in services.items:
            self.kube_api.delete_namespaced_service(
                service.metadata.name, namespace, body=delete_options, _request_timeout=self.config.timeout
            )

    def get_environments(self) -> List[SimpleEnvironment]:
        return [self.get_environment(env_name) for env_name in self.env_map]

    def get_environment(self, env_name: str) -> SimpleEnvironment:
        env_ns = self.get_environment_namespace(env_name)
        quota = self.get_resource_quota(env_ns)
        return SimpleEnvironment(name=env_name, namespace=env_ns, quota=quota)

    def get_environment_namespace(self, env_name: str) -> str:
        env_ns = self.env_map.get(env_name)
        if env_ns is None:
            raise UnknownEnvironmentError(env_name)
        return env_ns

    def get_build_configs(self, space_name: str) -> List[str]:
        result = self.openshift_api.get_build_configs(
            self.config.user_namespace, f"{SPACE_LABEL}={space_name}"
        )
        return parse_build_config_names(result)

    def get_deployment_config(self, namespace: str, app_name: str, space_name: str) -> Optional[DeploymentConfigInfo]:
        result = self.openshift_api.get_deployment_config(namespace, app_name)
        if result is None:
            logger.debug(f"No deployment config {app_name} in namespace {namespace}")
            return None
        dc = parse_deployment_config(result, app_name)
        if dc.space != space_name:
            raise SpaceMismatchError(app_name, space_name, dc.space)
        return dc

    def get_current_deployment(self, space_name: str, app_name: str, namespace: str) -> Optional[CurrentDeployment]:
        """
        Find the RC the web console shows as the current deployment of an app.

        Returns:
            The current deployment, or None if the app has no DeploymentConfig
            or none of its RCs is visible
        """
        dc = self.get_deployment_config(namespace, app_name, space_name)
        if dc is None:
            return None

        rcs = self.get_replication_controllers(namespace, dc.uid)
        rc = select_current_replication_controller(rcs)
        if rc is None:
            logger.debug(f"No visible replication controller for {app_name} in namespace {namespace}")
            return None

        return CurrentDeployment(
            dc_uid=dc.uid,
            rc_uid=rc.metadata.uid,
            rc_name=rc.metadata.name,
            created=rc.metadata.creation_timestamp,
            app_version=dc.version,
        )

    def get_replication_controllers(self, namespace: str, dc_uid: str) -> List[Any]:
        # No server-side filter on owner, so list everything and match UIDs
        rcs = self.kube_api.list_namespaced_replication_controller(
            namespace, _request_timeout=self.config.timeout
        )
        return [rc for rc in rcs.items if is_controlled_by(rc, dc_uid)]

    def get_pods(self, namespace: str, rc_uid: str) -> List[Any]:
        pods = self.kube_api.list_namespaced_pod(namespace, _request_timeout=self.config.timeout)
        return [pod for pod in pods.items if is_controlled_by(pod, rc_uid)]

    def get_deployment_env_stats(self, namespace: str, rc_uid: str) -> EnvStats:
        pods = self.get_pods(namespace, rc_uid)
        # TODO fill CPU and memory from per-pod metrics once a metrics client is wired in
        return EnvStats(
            cpucores=EnvStatCores(),
            memory=EnvStatMemory(),
            pods=get_pod_status(pods),
        )

    def get_resource_quota(self, namespace: str) -> EnvStats:
        """Read CPU and memory usage against the namespace's compute quota."""
        try:
            quota = self.kube_api.read_namespaced_resource_quota(
                COMPUTE_RESOURCES_QUOTA, namespace, _request_timeout=self.config.timeout
            )
        except ApiException as e:
            if e.status == 404:
                raise ResourceQuotaNotFoundError(COMPUTE_RESOURCES_QUOTA, namespace) from e
            raise
        if quota is None:
            raise ResourceQuotaNotFoundError(COMPUTE_RESOURCES_QUOTA, namespace)

        hard = (quota.status.hard if quota.status else None) or {}
        used = (quota.status.used if quota.status else None) or {}

        cpu = EnvStatCores(
            quota=int64_to_int32(milli_value(hard.get(RESOURCE_LIMITS_CPU))),
            used=int64_to_int32(milli_value(used.get(RESOURCE_LIMITS_CPU))),
        )
        memory = EnvStatMemory(
            quota=quantity_to_int32(hard.get(RESOURCE_LIMITS_MEMORY)),
            used=quantity_to_int32(used.get(RESOURCE_LIMITS_MEMORY)),
            units=MEMORY_UNITS,
        )
        return EnvStats(cpucores=cpu, memory=memory)
