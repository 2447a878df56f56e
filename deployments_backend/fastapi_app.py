# fastapi_app.py
from __future__ import annotations

import logging
from typing import List, Optional

import requests
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from kubernetes.client.rest import ApiException
from pydantic import BaseModel, Field

from deployments_backend.adapters import KubeClientGetter, MissingCredentialsError
from deployments_backend.config import settings
from deployments_backend.errors import KubeClientError, UnknownEnvironmentError
from deployments_backend.kube_client import KubeClient
from deployments_backend.kube_types import SimpleApp, SimpleDeployment, SimpleEnvironment, SimplePod, SimpleSpace

logging.basicConfig(level=settings.LOG_LEVEL.upper())
logger = logging.getLogger(__name__)

USER_NAMESPACE_HEADER = "X-User-Namespace"

# -----------------------------------------------------------------------------
# FastAPI app + CORS
# -----------------------------------------------------------------------------
app = FastAPI(title="Space Deployments Backend", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------
class ScaleBody(BaseModel):
    replicas: int = Field(..., ge=0, description="New replica count")

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def get_kube_client_getter() -> KubeClientGetter:
    return KubeClientGetter(settings)

def _bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None

def _kube_client(request: Request, getter: KubeClientGetter) -> KubeClient:
    """Create a client for the request. Use it in a ``with`` block so it is always closed."""
    return getter.get_kube_client(
        bearer_token=_bearer_token(request),
        user_namespace=request.headers.get(USER_NAMESPACE_HEADER),
    )

def _http_error(e: Exception, what: str, action: str = "get") -> HTTPException:
    if isinstance(e, UnknownEnvironmentError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, MissingCredentialsError):
        return HTTPException(status_code=401, detail=str(e))
    logger.error(f"❌ Error trying to {action} {what}: {e}")
    return HTTPException(status_code=500, detail=f"Failed to {action} {what}: {e}")

_CLIENT_ERRORS = (KubeClientError, MissingCredentialsError, ApiException, requests.RequestException)

# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
# Handlers are plain (sync) functions run in the threadpool. A client that
# disconnects does not abort the cluster calls already in flight; only
# REQUEST_TIMEOUT_SECS bounds each of them.

@app.get("/health")
async def health():
    return {"status": "healthy"}

@app.get("/api/apps/environments")
def show_environments(request: Request,
                      getter: KubeClientGetter = Depends(get_kube_client_getter)) -> List[SimpleEnvironment]:
    """Get every environment of the current user, with quota usage."""
    try:
        with _kube_client(request, getter) as kc:
            return kc.get_environments()
    except _CLIENT_ERRORS as e:
        raise _http_error(e, "environments")

@app.get("/api/apps/environments/{env_name}")
def show_environment(env_name: str, request: Request,
                     getter: KubeClientGetter = Depends(get_kube_client_getter)) -> SimpleEnvironment:
    try:
        with _kube_client(request, getter) as kc:
            return kc.get_environment(env_name)
    except _CLIENT_ERRORS as e:
        raise _http_error(e, f"environment {env_name}")

@app.get("/api/apps/spaces/{space_name}")
def show_space(space_name: str, request: Request,
               getter: KubeClientGetter = Depends(get_kube_client_getter)) -> SimpleSpace:
    """Get a space with all its applications and their deployments."""
    try:
        with _kube_client(request, getter) as kc:
            return kc.get_space(space_name)
    except _CLIENT_ERRORS as e:
        raise _http_error(e, f"space {space_name}")

@app.get("/api/apps/spaces/{space_name}/applications/{app_name}")
def show_space_app(space_name: str, app_name: str, request: Request,
                   getter: KubeClientGetter = Depends(get_kube_client_getter)) -> SimpleApp:
    try:
        with _kube_client(request, getter) as kc:
            return kc.get_application(space_name, app_name)
    except _CLIENT_ERRORS as e:
        raise _http_error(e, f"application {app_name} in space {space_name}")

@app.get("/api/apps/spaces/{space_name}/applications/{app_name}/deployments/{env_name}")
def show_space_app_deployment(space_name: str, app_name: str, env_name: str, request: Request,
                              getter: KubeClientGetter = Depends(get_kube_client_getter)) -> SimpleDeployment:
    """Get the current deployment of an application in one environment."""
    try:
        with _kube_client(request, getter) as kc:
            deployment = kc.get_deployment(space_name, app_name, env_name)
    except _CLIENT_ERRORS as e:
        raise _http_error(e, f"deployment of {app_name} in {env_name}")
    if deployment is None:
        raise HTTPException(status_code=404, detail=f"no deployment of {app_name} in environment {env_name}")
    return deployment

@app.post("/api/apps/spaces/{space_name}/applications/{app_name}/deployments/{env_name}/scale")
def scale_space_app_deployment(space_name: str, app_name: str, env_name: str, body: ScaleBody, request: Request,
                               getter: KubeClientGetter = Depends(get_kube_client_getter)):
    """Scale the DeploymentConfig of an application in one environment."""
    try:
        with _kube_client(request, getter) as kc:
            old_replicas = kc.scale_deployment(space_name, app_name, env_name, body.replicas)
    except _CLIENT_ERRORS as e:
        raise _http_error(e, f"deployment of {app_name} in {env_name}", action="scale")
    if old_replicas is None:
        raise HTTPException(status_code=404, detail=f"no deployment of {app_name} in environment {env_name}")
    return {
        "success": True,
        "message": f"Deployment {app_name} scaled to {body.replicas} replicas in {env_name}",
        "old_replicas": old_replicas,
        "new_replicas": body.replicas,
    }

@app.delete("/api/apps/spaces/{space_name}/applications/{app_name}/deployments/{env_name}")
def delete_space_app_deployment(space_name: str, app_name: str, env_name: str, request: Request,
                                getter: KubeClientGetter = Depends(get_kube_client_getter)):
    """Delete an application from one environment, with its routes and services."""
    try:
        with _kube_client(request, getter) as kc:
            deleted = kc.delete_deployment(space_name, app_name, env_name)
    except _CLIENT_ERRORS as e:
        raise _http_error(e, f"deployment of {app_name} in {env_name}", action="delete")
    if not deleted:
        raise HTTPException(status_code=404, detail=f"no deployment of {app_name} in environment {env_name}")
    return {"success": True, "message": f"Deployment {app_name} deleted from {env_name}"}

@app.get("/api/apps/environments/{env_name}/applications/{app_name}/pods")
def show_env_app_pods(env_name: str, app_name: str, request: Request,
                      getter: KubeClientGetter = Depends(get_kube_client_getter)) -> List[SimplePod]:
    try:
        with _kube_client(request, getter) as kc:
            pods = kc.get_pods_in_namespace(env_name, app_name)
    except _CLIENT_ERRORS as e:
        raise _http_error(e, f"pods of {app_name} in {env_name}")
    if not pods:
        raise HTTPException(status_code=404, detail=f"no pods of {app_name} in environment {env_name}")
    return pods
