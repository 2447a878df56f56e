"""
Type definitions for environment and deployment status.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass(frozen=True)
class EnvStatCores:
    """CPU usage, in millicores."""
    used: Optional[int] = None
    quota: Optional[int] = None


@dataclass(frozen=True)
class EnvStatMemory:
    """Memory usage."""
    used: Optional[int] = None
    quota: Optional[int] = None
    units: Optional[str] = None


@dataclass(frozen=True)
class EnvStatPods:
    """Pod counts by lifecycle bucket."""
    starting: int = 0
    running: int = 0
    stopping: int = 0
    total: int = 0  # every owned pod, including phases not counted above


@dataclass(frozen=True)
class EnvStats:
    """Point-in-time resource usage of a deployment or environment."""
    cpucores: EnvStatCores = field(default_factory=EnvStatCores)
    memory: EnvStatMemory = field(default_factory=EnvStatMemory)
    pods: Optional[EnvStatPods] = None


@dataclass
class SimpleDeployment:
    """The current deployment of an application in one environment."""
    name: str
    stats: EnvStats
    version: Optional[str] = None


@dataclass
class SimpleApp:
    """An application (BuildConfig) and its deployments across environments."""
    name: str
    pipeline: List[SimpleDeployment] = field(default_factory=list)


@dataclass
class SimpleSpace:
    """A space and every application that belongs to it."""
    name: str
    applications: List[SimpleApp] = field(default_factory=list)


@dataclass
class SimpleEnvironment:
    """An environment, its namespace and its quota usage."""
    name: str
    namespace: str
    quota: EnvStats


@dataclass
class SimplePod:
    """A pod of an application, as listed for an environment."""
    name: str
    namespace: str
    status: str
    node: Optional[str] = None
    restarts: int = 0
    created: Optional[datetime] = None
    stopping: bool = False


@dataclass(frozen=True)
class DeploymentConfigInfo:
    """The fields read from a raw DeploymentConfig."""
    name: str
    uid: str
    space: str
    labels: Dict[str, str]
    version: Optional[str] = None


@dataclass(frozen=True)
class CurrentDeployment:
    """The ReplicationController currently representing a DeploymentConfig."""
    dc_uid: str
    rc_uid: str
    rc_name: str
    created: Optional[datetime] = None
    app_version: Optional[str] = None


@dataclass
class KubeClientConfig:
    """Connection details for one user's view of the cluster."""
    cluster_url: str
    bearer_token: str
    user_namespace: str
    timeout: Optional[float] = 30
    verify_ssl: bool = True
