#!/usr/bin/env python3
"""
Prometheus metrics for HMC operator
"""

import logging
from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server

logger = logging.getLogger(__name__)

# Reconcile metrics
reconcile_duration = Histogram(
    "hmc_reconcile_duration_seconds",
    "Time spent in successful reconciliations",
    ["kind"],
)

reconcile_success = Counter(
    "hmc_reconcile_success_total",
    "Total number of successful reconciliations",
    ["kind", "namespace", "name"],
)

reconcile_errors = Counter(
    "hmc_reconcile_errors_total",
    "Total number of reconciliation errors",
    ["kind", "namespace", "name", "error_type"],
)

reconcile_requeues = Counter(
    "hmc_reconcile_requeues_total",
    "Total number of reconciliations that asked for another pass",
    ["kind", "namespace", "name"],
)

# ManagedCluster metrics
managed_cluster_ready = Gauge(
    "hmc_managed_cluster_ready",
    "Ready condition of a ManagedCluster (1 True, 0 False, -1 Unknown)",
    ["namespace", "name"],
)

provider_clusters_released = Counter(
    "hmc_provider_clusters_released_total",
    "Total number of provider clusters released for deletion",
    ["namespace", "provider"],
)

# Template metrics
template_valid = Gauge(
    "hmc_template_valid",
    "Whether a template is marked as valid",
    ["kind", "namespace", "name"],
)

# Management metrics
component_ready = Gauge(
    "hmc_management_component_ready",
    "Whether a management component was installed successfully",
    ["component"],
)

# Operator info
operator_info = Info(
    "hmc_operator",
    "HMC operator information",
)

READY_VALUES = {"True": 1, "False": 0}


def init_metrics(port: int = 0):
    """Initialize operator metrics and start the exporter when port is set"""
    operator_info.info(
        {
            "version": "v1alpha1",
            "name": "hmc-operator",
            "description": "Hybrid Multi Cluster management operator",
        }
    )
    if port:
        start_http_server(port)
        logger.info(f"Prometheus metrics exported on port {port}")
    logger.info("Prometheus metrics initialized")


def record_reconcile_success(kind: str, namespace: str, name: str):
    reconcile_success.labels(kind=kind, namespace=namespace, name=name).inc()


def record_reconcile_error(kind: str, namespace: str, name: str, error_type: str):
    reconcile_errors.labels(
        kind=kind, namespace=namespace, name=name, error_type=error_type
    ).inc()


def record_requeue(kind: str, namespace: str, name: str):
    reconcile_requeues.labels(kind=kind, namespace=namespace, name=name).inc()


def record_provider_cluster_released(namespace: str, provider: str):
    provider_clusters_released.labels(namespace=namespace, provider=provider).inc()


def update_managed_cluster_metrics(namespace: str, name: str, ready_status: str):
    """Export the Ready condition of a ManagedCluster"""
    managed_cluster_ready.labels(namespace=namespace, name=name).set(
        READY_VALUES.get(ready_status, -1)
    )


def update_template_metrics(kind: str, namespace: str, name: str, valid: bool):
    template_valid.labels(kind=kind, namespace=namespace, name=name).set(1 if valid else 0)


def update_component_metrics(component: str, success: bool):
    component_ready.labels(component=component).set(1 if success else 0)
