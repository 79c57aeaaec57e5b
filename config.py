#!/usr/bin/env python3
"""
Operator settings, read from environment variables
"""

import os
from dataclasses import dataclass


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    # Namespaces
    SYSTEM_NAMESPACE: str = os.environ.get("SYSTEM_NAMESPACE", "hmc-system")

    # Default chart registry
    DEFAULT_OCI_REGISTRY: str = os.environ.get(
        "DEFAULT_OCI_REGISTRY", "oci://ghcr.io/mirantis/hmc/charts"
    )
    INSECURE_REGISTRY: bool = _bool(os.environ.get("INSECURE_REGISTRY", "false"))
    REGISTRY_CREDENTIALS_SECRET: str = os.environ.get("REGISTRY_CREDENTIALS_SECRET", "")

    # Requeue intervals (seconds)
    DEFAULT_REQUEUE_INTERVAL: float = float(os.environ.get("DEFAULT_REQUEUE_INTERVAL", "10"))
    ERROR_REQUEUE_INTERVAL: float = float(os.environ.get("ERROR_REQUEUE_INTERVAL", "60"))
    CLUSTER_MONITOR_INTERVAL: float = float(os.environ.get("CLUSTER_MONITOR_INTERVAL", "60"))

    # Helm
    CHART_DOWNLOAD_TIMEOUT: float = float(os.environ.get("CHART_DOWNLOAD_TIMEOUT", "60"))
    HELM_RENDER_TIMEOUT: float = float(os.environ.get("HELM_RENDER_TIMEOUT", "120"))
    HELM_BINARY: str = os.environ.get("HELM_BINARY", "helm")

    # Startup
    CREATE_MANAGEMENT: bool = _bool(os.environ.get("CREATE_MANAGEMENT", "true"))
    METRICS_PORT: int = int(os.environ.get("METRICS_PORT", "8080"))


settings = Settings()
