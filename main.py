#!/usr/bin/env python3

import kopf
import logging

import clients
import config
from helm import release_owner_key
from managedcluster_handlers import reconcile_managed_cluster, handle_managed_cluster_deletion
from management_handlers import reconcile_management, ensure_management
from metrics import init_metrics
from template_handlers import reconcile_template, chart_owner_key

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

HMC = clients.HMC_GROUP, clients.HMC_VERSION

# kopf bookkeeping annotations, kept apart from the reconcile-requested annotation
KOPF_PREFIX = "kopf.hmc.mirantis.com"

OWNER_RESOURCES = {
    resource.kind: resource
    for resource in (
        clients.CLUSTER_TEMPLATES,
        clients.SERVICE_TEMPLATES,
        clients.PROVIDER_TEMPLATES,
        clients.MANAGED_CLUSTERS,
        clients.MANAGEMENTS,
    )
}


# Template handlers
@kopf.on.create(*HMC, "clustertemplates")
@kopf.on.update(*HMC, "clustertemplates")
@kopf.on.resume(*HMC, "clustertemplates")
async def cluster_template_handler(name, namespace, **kwargs):
    await reconcile_template(clients.CLUSTER_TEMPLATES.kind, namespace, name)


@kopf.on.create(*HMC, "servicetemplates")
@kopf.on.update(*HMC, "servicetemplates")
@kopf.on.resume(*HMC, "servicetemplates")
async def service_template_handler(name, namespace, **kwargs):
    await reconcile_template(clients.SERVICE_TEMPLATES.kind, namespace, name)


@kopf.on.create(*HMC, "providertemplates")
@kopf.on.update(*HMC, "providertemplates")
@kopf.on.resume(*HMC, "providertemplates")
async def provider_template_handler(name, namespace, **kwargs):
    await reconcile_template(clients.PROVIDER_TEMPLATES.kind, namespace, name)


# ManagedCluster handlers
@kopf.on.create(*HMC, "managedclusters")
@kopf.on.update(*HMC, "managedclusters")
@kopf.on.resume(*HMC, "managedclusters")
async def managed_cluster_handler(name, namespace, **kwargs):
    await reconcile_managed_cluster(namespace, name)


# Deletion is guarded by the operator's own finalizer, kopf must not add one
@kopf.on.delete(*HMC, "managedclusters", optional=True)
async def managed_cluster_delete_handler(name, namespace, **kwargs):
    await handle_managed_cluster_deletion(namespace, name)


@kopf.timer(
    *HMC, "managedclusters",
    interval=config.settings.CLUSTER_MONITOR_INTERVAL,
    idle=config.settings.CLUSTER_MONITOR_INTERVAL,
)
async def monitor_managed_cluster(name, namespace, **kwargs):
    """Periodic pass so cluster and release status keep converging without events"""
    try:
        await reconcile_managed_cluster(namespace, name)
    except kopf.TemporaryError as e:
        logger.debug(f"Periodic pass over ManagedCluster {namespace}/{name}: {e}")


# Management handlers
@kopf.on.create(*HMC, "managements")
@kopf.on.update(*HMC, "managements")
@kopf.on.resume(*HMC, "managements")
async def management_handler(name, **kwargs):
    await reconcile_management(name)


# Subordinate object events re-enqueue their owners
@kopf.on.event("helm.toolkit.fluxcd.io", "v2", "helmreleases")
async def helm_release_event(body, **kwargs):
    key = release_owner_key(body)
    if key is None:
        return
    kind, namespace, name = key
    await clients.request_reconcile(
        OWNER_RESOURCES[kind], name, namespace, body["metadata"].get("resourceVersion", "")
    )


@kopf.on.event("source.toolkit.fluxcd.io", "v1", "helmcharts")
async def helm_chart_event(body, **kwargs):
    key = chart_owner_key(body)
    if key is None:
        return
    kind, namespace, name = key
    await clients.request_reconcile(
        OWNER_RESOURCES[kind], name, namespace, body["metadata"].get("resourceVersion", "")
    )


@kopf.on.startup()
async def configure(settings: kopf.OperatorSettings, **_):
    settings.posting.level = logging.WARNING
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=KOPF_PREFIX)
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(prefix=KOPF_PREFIX)

    clients.setup_kubernetes_client()
    init_metrics(config.settings.METRICS_PORT)
    await ensure_management()
    logger.info("HMC operator started")


if __name__ == "__main__":
    kopf.run()
