"""
Adapters between HTTP requests and request-scoped kube clients.
"""
import logging
from typing import Optional

from deployments_backend.config import Settings
from deployments_backend.kube_client import KubeClient
from deployments_backend.kube_types import KubeClientConfig

logger = logging.getLogger(__name__)


class MissingCredentialsError(Exception):
    """No bearer token or user namespace is available for the request."""


class KubeClientGetter:
    """Builds a KubeClient for the cluster identity of the current request."""
    
    def __init__(self, settings: Settings):
        self.settings = settings
    
    def get_kube_client_config(self, bearer_token: Optional[str] = None,
                               user_namespace: Optional[str] = None) -> KubeClientConfig:
        """Combine request credentials with the configured defaults."""
        token = bearer_token or self.settings.CLUSTER_TOKEN
        namespace = user_namespace or self.settings.USER_NAMESPACE
        if not token:
            raise MissingCredentialsError("no bearer token for the cluster API")
        if not namespace:
            raise MissingCredentialsError("no user namespace for the cluster API")
        
        return KubeClientConfig(
            cluster_url=self.settings.CLUSTER_URL,
            bearer_token=token,
            user_namespace=namespace,
            timeout=self.settings.REQUEST_TIMEOUT_SECS,
            verify_ssl=self.settings.CLUSTER_VERIFY_SSL,
        )
    
    def get_kube_client(self, bearer_token: Optional[str] = None,
                        user_namespace: Optional[str] = None) -> KubeClient:
        """
        Create a kube client. The caller must close it.
        
        Args:
            bearer_token: Token from the request (default: configured token)
            user_namespace: Namespace from the request (default: configured namespace)
            
        Returns:
            KubeClient with its environments already discovered
        """
        config = self.get_kube_client_config(bearer_token, user_namespace)
        logger.debug(f"Creating kube client for {config.cluster_url}, namespace {config.user_namespace}")
        return KubeClient(config)
