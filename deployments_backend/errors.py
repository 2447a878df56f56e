"""
Errors raised while reading deployment and environment state from the cluster.
"""
from typing import Any


class KubeClientError(Exception):
    """Base class for failures in the cluster status client."""


class MalformedResponseError(KubeClientError):
    """A cluster object is missing a field we need, or the field has the wrong type."""


class SpaceMismatchError(KubeClientError):
    """A DeploymentConfig belongs to a different space than the one requested."""

    def __init__(self, name: str, expected_space: str, actual_space: str):
        self.name = name
        self.expected_space = expected_space
        self.actual_space = actual_space
        super().__init__(
            f"deployment config {name} is part of space {actual_space}, expected space {expected_space}"
        )


class ClusterRequestError(KubeClientError):
    """Non-successful HTTP status returned by the cluster API."""

    def __init__(self, url: str, status_code: int, method: str = "GET"):
        self.url = url
        self.status_code = status_code
        self.method = method
        super().__init__(f"failed to {method} url {url} due to status code {status_code}")


class QuantityConversionError(KubeClientError):
    """A resource quantity does not fit the requested integer width."""

    def __init__(self, value: Any, target: str):
        self.value = value
        self.target = target
        super().__init__(f"{value} cannot be represented as {target} integer")


class EnvironmentConfigError(KubeClientError):
    """The environments config map in the user namespace is unusable."""


class ResourceQuotaNotFoundError(KubeClientError):
    """The namespace has no compute resource quota."""

    def __init__(self, name: str, namespace: str):
        self.name = name
        self.namespace = namespace
        super().__init__(f"no resource quota with name: {name}")


class UnknownEnvironmentError(KubeClientError):
    """The environment name is not one of the user's environments."""

    def __init__(self, env_name: str):
        self.env_name = env_name
        super().__init__(f"unknown environment: {env_name}")
