"""
Configuration settings for the deployments backend.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    """Application settings from environment variables."""
    
    # Application
    APP_NAME: str = Field(default="space-deployments-backend", description="Application name")
    APP_ENV: str = Field(default="dev", description="Environment: dev|staging|prod")
    
    # HTTP Configuration
    HTTP_PORT: int = Field(default=8080, description="Service port")
    
    # Cluster Configuration
    CLUSTER_URL: str = Field(default="https://openshift.default.svc", description="Cluster API server URL")
    CLUSTER_TOKEN: Optional[str] = Field(default=None, description="Bearer token used when a request carries none")
    USER_NAMESPACE: Optional[str] = Field(default=None, description="User namespace used when a request names none")
    CLUSTER_VERIFY_SSL: bool = Field(default=True, description="Verify the cluster TLS certificate")
    
    # Service Configuration
    REQUEST_TIMEOUT_SECS: float = Field(default=30, description="Timeout for each cluster request")
    LOG_LEVEL: str = Field(default="info", description="Log level: info|debug|warning")
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
