"""
Configuration module for the EMQX operator.

Loads configuration from environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class KubernetesConfig:
    """Kubernetes API access configuration."""

    kubeconfig: Optional[str] = None
    in_cluster: bool = True
    namespace: Optional[str] = None  # None watches every namespace
    request_timeout: float = 30.0  # seconds per API call
    watch_timeout: int = 300  # seconds before a watch stream is reopened

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig=os.getenv("KUBECONFIG") or None,
            in_cluster=bool(os.getenv("KUBERNETES_SERVICE_HOST")),
            namespace=os.getenv("WATCH_NAMESPACE") or None,
            request_timeout=float(os.getenv("KUBE_REQUEST_TIMEOUT", "30")),
            watch_timeout=int(os.getenv("KUBE_WATCH_TIMEOUT", "300")),
        )


@dataclass
class ControllerConfig:
    """Controller reconciliation loop configuration."""

    reconcile_interval: int = 60  # seconds between full resyncs
    max_concurrent_reconciles: int = 5

    # Exponential backoff configuration
    backoff_base_delay: int = 60  # base delay in seconds
    backoff_max_delay: int = 3600  # max delay in seconds (1 hour)
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    conflict_requeue_delay: float = 1.0  # seconds
    status_poll_interval: float = 15.0  # seconds, while a cluster is not Running

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            reconcile_interval=int(os.getenv("RECONCILE_INTERVAL", "60")),
            max_concurrent_reconciles=int(os.getenv("MAX_CONCURRENT_RECONCILES", "5")),
            backoff_base_delay=int(os.getenv("BACKOFF_BASE_DELAY", "60")),
            backoff_max_delay=int(os.getenv("BACKOFF_MAX_DELAY", "3600")),
            backoff_jitter_factor=float(os.getenv("BACKOFF_JITTER_FACTOR", "0.1")),
            conflict_requeue_delay=float(os.getenv("CONFLICT_REQUEUE_DELAY", "1")),
            status_poll_interval=float(os.getenv("STATUS_POLL_INTERVAL", "15")),
        )


@dataclass
class AdminAPIConfig:
    """EMQX management API configuration, shared by every member."""

    port: int = 8081
    username: str = "admin"
    password: str = field(default="public", repr=False)  # Never log password
    timeout: float = 10.0  # seconds per request
    scheme: str = "http"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            port=int(os.getenv("EMQX_API_PORT", "8081")),
            username=os.getenv("EMQX_API_USERNAME", "admin"),
            password=os.getenv("EMQX_API_PASSWORD", "public"),
            timeout=float(os.getenv("EMQX_API_TIMEOUT", "10")),
            scheme=os.getenv("EMQX_API_SCHEME", "http"),
        )


@dataclass
class PluginLifecycleConfig:
    """Retry policy for plugin load and unload."""

    backoff_base_delay: float = 15.0  # seconds
    backoff_max_delay: float = 240.0  # seconds
    max_unload_attempts: int = 6

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            backoff_base_delay=float(os.getenv("PLUGIN_BACKOFF_BASE_DELAY", "15")),
            backoff_max_delay=float(os.getenv("PLUGIN_BACKOFF_MAX_DELAY", "240")),
            max_unload_attempts=int(os.getenv("PLUGIN_MAX_UNLOAD_ATTEMPTS", "6")),
        )


@dataclass
class APIConfig:
    """API server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    cors_enabled: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        cors_origins = (
            os.getenv("CORS_ORIGINS", "").split(",")
            if os.getenv("CORS_ORIGINS")
            else ["*"]
        )
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_enabled=os.getenv("CORS_ENABLED", "false").lower() == "true",
            cors_origins=cors_origins,
        )


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    controller: ControllerConfig
    admin_api: AdminAPIConfig
    plugins: PluginLifecycleConfig
    api: APIConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kubernetes=KubernetesConfig.from_env(),
            controller=ControllerConfig.from_env(),
            admin_api=AdminAPIConfig.from_env(),
            plugins=PluginLifecycleConfig.from_env(),
            api=APIConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            controller=ControllerConfig(),
            admin_api=AdminAPIConfig(),
            plugins=PluginLifecycleConfig(),
            api=APIConfig(),
        )


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
