#!/usr/bin/env python3

import asyncio
import copy
import kopf
import logging
import time
from collections import defaultdict, namedtuple
from typing import Dict, List, Optional

from kubernetes.client.rest import ApiException

import clients
import conditions
import credentials
import helm
import sveltos
from config import settings
from templates import infrastructure_providers

from metrics import (
    record_reconcile_success,
    record_reconcile_error,
    record_requeue,
    record_provider_cluster_released,
    update_managed_cluster_metrics,
    reconcile_duration,
)

logger = logging.getLogger(__name__)

MANAGED_CLUSTER_FINALIZER = "hmc.mirantis.com/managed-cluster"
BLOCKING_FINALIZER = "hmc.mirantis.com/cleanup"

FLUX_HELM_CHART_NAME_KEY = "helm.toolkit.fluxcd.io/name"
FLUX_HELM_CHART_NAMESPACE_KEY = "helm.toolkit.fluxcd.io/namespace"
CLUSTER_NAME_LABEL_KEY = "cluster.x-k8s.io/cluster-name"

CREDENTIAL_READY_STATE = "Ready"
REGISTRY_TYPE_OCI = "oci"

KIND = clients.MANAGED_CLUSTERS.kind

# Infrastructure provider -> where its cluster objects and machines live
ProviderKinds = namedtuple("ProviderKinds", ["cluster", "machine"])

PROVIDER_KINDS = {
    "aws": ProviderKinds(clients.AWS_CLUSTERS, clients.CAPI_MACHINES),
    "azure": ProviderKinds(clients.AZURE_CLUSTERS, clients.CAPI_MACHINES),
    "vsphere": ProviderKinds(clients.VSPHERE_CLUSTERS, clients.CAPI_MACHINES),
}

# One pass at a time per ManagedCluster, shared by handlers and the timer
_locks: Dict[tuple, asyncio.Lock] = defaultdict(asyncio.Lock)


class ManagedClusterError(Exception):
    """A gate failed; the reason is recorded in the conditions"""


def set_identity_values(values: Optional[Dict], identity_ref: Optional[Dict]) -> Dict:
    """Copy of the user values with clusterIdentity set to the credential identity"""
    result = copy.deepcopy(values) if values else {}
    result["clusterIdentity"] = identity_ref
    return result


async def set_status_from_cluster_status(managed_cluster: Dict) -> bool:
    """
    Mirror the conditions of the provisioned CAPI Cluster

    Returns True when another pass is needed: the Cluster does not exist yet
    or at least one of its conditions is not True.
    """
    namespace = managed_cluster["metadata"]["namespace"]
    name = managed_cluster["metadata"]["name"]
    ledger = managed_cluster["status"]["conditions"]

    clusters = await clients.list_objects(
        clients.CAPI_CLUSTERS, namespace, labels={FLUX_HELM_CHART_NAME_KEY: name}
    )
    if not clusters:
        logger.info(f"Cluster for ManagedCluster {namespace}/{name} not found, it is not created yet or already deleted")
        return True

    cluster_conditions = clusters[0].get("status", {}).get("conditions")
    if not cluster_conditions:
        logger.info(f"Cluster for ManagedCluster {namespace}/{name} has no conditions yet")
        return True

    all_complete = True
    for condition in cluster_conditions:
        status = condition.get("status", conditions.UNKNOWN)
        reason = condition.get("reason", "")
        if status != conditions.TRUE:
            all_complete = False
        if not reason and status == conditions.TRUE:
            reason = conditions.SUCCEEDED_REASON
        ctype = condition["type"]
        if ctype == conditions.READY:
            ctype = conditions.CLUSTER_READY
        conditions.set_condition(ledger, ctype, status, reason, condition.get("message", ""))

    return not all_complete


async def build_service_chart_opts(namespace: str, services: Optional[List[Dict]]) -> List[sveltos.HelmChartOpts]:
    """Resolve each enabled service to the chart its ServiceTemplate points at"""
    opts = []
    for service in services or []:
        if service.get("disable"):
            continue

        template_name = service["template"]
        template = await clients.get_object(clients.SERVICE_TEMPLATES, template_name, namespace)
        chart_ref = template.get("status", {}).get("chartRef")
        if not chart_ref:
            raise ManagedClusterError(
                f"status for ServiceTemplate {namespace}/{template_name} has not been updated yet"
            )

        chart = await clients.get_object(
            clients.HELM_CHARTS, chart_ref["name"], chart_ref.get("namespace") or namespace
        )
        # The repository lives next to the chart
        repo = await clients.get_object(
            clients.HELM_REPOSITORIES,
            chart["spec"]["sourceRef"]["name"],
            chart["metadata"]["namespace"],
        )

        helm_spec = template.get("spec", {}).get("helm", {})
        chart_name = helm_spec.get("chartName") or helm_spec.get("chartRef", {}).get("name", "")
        repo_spec = repo.get("spec", {})
        if repo_spec.get("type") != REGISTRY_TYPE_OCI:
            # Sveltos wants <repository>/<chart> for plain helm repositories
            sveltos_chart_name = f"{chart_name}/{chart_name}"
        else:
            sveltos_chart_name = chart_name

        opts.append(sveltos.HelmChartOpts(
            repository_url=repo_spec.get("url", ""),
            repository_name=chart_name,
            chart_name=sveltos_chart_name,
            chart_version=helm_spec.get("chartVersion", ""),
            release_name=service["name"],
            release_namespace=service.get("namespace") or service["name"],
            values=service.get("values"),
            plain_http=bool(repo_spec.get("insecure", False)),
        ))
    return opts


async def update_services(managed_cluster: Dict):
    """Reconcile the Profile that installs the attached services"""
    metadata = managed_cluster["metadata"]
    spec = managed_cluster.get("spec", {})

    chart_opts = await build_service_chart_opts(metadata["namespace"], spec.get("services"))
    await sveltos.reconcile_profile(
        metadata["namespace"],
        metadata["name"],
        match_labels={
            FLUX_HELM_CHART_NAMESPACE_KEY: metadata["namespace"],
            FLUX_HELM_CHART_NAME_KEY: metadata["name"],
        },
        owner_ref=clients.owner_reference(managed_cluster),
        chart_opts=chart_opts,
        priority=spec.get("servicesPriority", 100),
        stop_on_conflict=spec.get("stopOnConflict", False),
    )


def _fail(ledger: List[Dict], ctype: str, message: str):
    conditions.set_condition(ledger, ctype, conditions.FALSE, conditions.FAILED_REASON, message)


def _succeed(ledger: List[Dict], ctype: str, message: str):
    conditions.set_condition(ledger, ctype, conditions.TRUE, conditions.SUCCEEDED_REASON, message)


async def propagate_credentials(managed_cluster: Dict, providers: List[str]):
    """Hand the cloud credentials to the cloud controller of the provisioned cluster"""
    ledger = managed_cluster["status"]["conditions"]
    api = None
    for provider in providers:
        if provider in credentials.SKIPPED_PROVIDERS:
            continue
        if provider not in credentials.PROPAGATORS:
            _fail(ledger, conditions.CREDENTIALS_APPLIED, f"unsupported infrastructure provider {provider}")
            continue

        label, propagate = credentials.PROPAGATORS[provider]
        try:
            if api is None:
                api = await credentials.remote_api_for(managed_cluster)
            await propagate(managed_cluster, api)
        except (ApiException, credentials.PropagationError) as e:
            message = f"failed to create {label} CCM credentials: {e}"
            _fail(ledger, conditions.CREDENTIALS_APPLIED, message)
            raise ManagedClusterError(message)
        _succeed(ledger, conditions.CREDENTIALS_APPLIED, f"{label} CCM credentials created")


async def update_managed_cluster(managed_cluster: Dict):
    """
    Walk the gates in order: template, chart, credential, release, cluster, cloud credentials, services

    Returns when the pass is complete, raises kopf.TemporaryError when
    another pass is needed and any other exception when a gate failed.
    """
    metadata = managed_cluster["metadata"]
    name, namespace = metadata["name"], metadata["namespace"]
    spec = managed_cluster.get("spec", {})
    status = managed_cluster["status"]
    ledger = status["conditions"]

    # Template
    try:
        template = await clients.get_object(clients.CLUSTER_TEMPLATES, spec.get("template"), namespace)
    except ApiException as e:
        message = f"failed to get provided template: {e.reason}"
        if clients.is_not_found(e):
            message = "provided template is not found"
        _fail(ledger, conditions.TEMPLATE_READY, message)
        raise

    template_status = template.get("status", {})
    if not template_status.get("valid"):
        message = "provided template is not marked as valid"
        _fail(ledger, conditions.TEMPLATE_READY, message)
        raise ManagedClusterError(message)

    if template_status.get("k8sVersion"):
        status["k8sVersion"] = template_status["k8sVersion"]
    _succeed(ledger, conditions.TEMPLATE_READY, "Template is valid")

    # Chart
    try:
        chart_source = await helm.get_chart(template_status.get("chartRef"), namespace)
    except (ApiException, helm.ChartError) as e:
        _fail(ledger, conditions.HELM_CHART_READY, f"failed to get helm chart source: {e}")
        raise

    logger.info(f"Downloading Helm chart for ManagedCluster {namespace}/{name}")
    try:
        chart = await helm.download_chart_from_artifact(chart_source.get("status", {}).get("artifact"))
    except helm.ChartError as e:
        _fail(ledger, conditions.HELM_CHART_READY, f"failed to download helm chart: {e}")
        raise

    logger.info(f"Validating Helm chart with provided values for ManagedCluster {namespace}/{name}")
    try:
        await helm.render_chart(chart, name, namespace, spec.get("config"))
    except helm.ChartRenderError as e:
        _fail(
            ledger,
            conditions.HELM_CHART_READY,
            f"failed to validate template with provided configuration: {e}",
        )
        raise
    _succeed(ledger, conditions.HELM_CHART_READY, "Helm chart is valid")

    # Credential
    credential = await clients.find_object(clients.CREDENTIALS, spec.get("credential", ""), namespace)
    if credential is None:
        message = f"Failed to get Credential: {namespace}/{spec.get('credential', '')} is not found"
        _fail(ledger, conditions.CREDENTIAL_READY, message)
        raise ManagedClusterError(message)
    if credential.get("status", {}).get("state") != CREDENTIAL_READY_STATE:
        message = "Credential is not in Ready state"
        _fail(ledger, conditions.CREDENTIAL_READY, message)
        raise ManagedClusterError(message)
    _succeed(ledger, conditions.CREDENTIAL_READY, "Credential is Ready")

    if spec.get("dryRun"):
        logger.info(f"ManagedCluster {namespace}/{name} is in dry-run mode, not deploying")
        return

    # Release
    values = set_identity_values(spec.get("config"), credential.get("spec", {}).get("identityRef"))
    try:
        release, _ = await helm.reconcile_helm_release(
            name,
            namespace,
            values=values,
            owner_ref=clients.owner_reference(managed_cluster),
            chart_ref=template_status.get("chartRef"),
        )
    except ApiException as e:
        _fail(ledger, conditions.HELM_RELEASE_READY, f"failed to reconcile HelmRelease: {e.reason}")
        raise

    ready = helm.release_ready_condition(release)
    if ready is not None:
        conditions.set_condition(
            ledger,
            conditions.HELM_RELEASE_READY,
            ready.get("status", conditions.UNKNOWN),
            ready.get("reason", ""),
            ready.get("message", ""),
        )

    # Provisioned cluster
    if await set_status_from_cluster_status(managed_cluster):
        raise kopf.TemporaryError(
            f"Cluster {namespace}/{name} is not ready yet", delay=settings.DEFAULT_REQUEUE_INTERVAL
        )

    if not helm.release_is_ready(release):
        raise kopf.TemporaryError(
            f"HelmRelease {namespace}/{name} is not ready yet", delay=settings.DEFAULT_REQUEUE_INTERVAL
        )

    # Cloud credentials
    await propagate_credentials(managed_cluster, infrastructure_providers(template_status.get("providers")))

    # Services
    await update_services(managed_cluster)

    # TODO: propagate the state of attached services into the conditions and stop requeueing
    raise kopf.TemporaryError(
        f"Services of {namespace}/{name} reconciled, checking again", delay=settings.DEFAULT_REQUEUE_INTERVAL
    )


async def update_status(managed_cluster: Dict):
    metadata = managed_cluster["metadata"]
    status = managed_cluster["status"]
    status["observedGeneration"] = metadata.get("generation")
    ready = conditions.summarize(status["conditions"], "ManagedCluster is ready")

    await clients.replace_status(clients.MANAGED_CLUSTERS, managed_cluster)
    update_managed_cluster_metrics(metadata["namespace"], metadata["name"], ready["status"])


async def reconcile(namespace: str, name: str) -> bool:
    """One pass over a ManagedCluster; True once the object is gone"""
    managed_cluster = await clients.find_object(clients.MANAGED_CLUSTERS, name, namespace)
    if managed_cluster is None:
        logger.info(f"ManagedCluster {namespace}/{name} not found, ignoring since object must be deleted")
        return True

    if managed_cluster["metadata"].get("deletionTimestamp"):
        logger.info(f"Deleting ManagedCluster {namespace}/{name}")
        return await delete_managed_cluster(managed_cluster)

    patch = clients.add_finalizer_patch(managed_cluster, MANAGED_CLUSTER_FINALIZER)
    if patch:
        await clients.patch_object(clients.MANAGED_CLUSTERS, name, patch, namespace)
        logger.info(f"Added finalizer {MANAGED_CLUSTER_FINALIZER} to ManagedCluster {namespace}/{name}")
        raise kopf.TemporaryError("Deletion guard added", delay=1)

    status = managed_cluster.setdefault("status", {})
    ledger = status.setdefault("conditions", [])
    if not ledger:
        conditions.init_conditions(ledger, bool(managed_cluster.get("spec", {}).get("dryRun")))

    try:
        await update_managed_cluster(managed_cluster)
    finally:
        await update_status(managed_cluster)
    return False


async def reconcile_managed_cluster(namespace: str, name: str):
    """Main reconciliation point for ManagedCluster"""
    logger.info(f"Reconciling ManagedCluster: {namespace}/{name}")

    start_time = time.time()

    try:
        async with _locks[(namespace, name)]:
            gone = await reconcile(namespace, name)
        if gone:
            _locks.pop((namespace, name), None)

        duration = time.time() - start_time
        reconcile_duration.labels(kind=KIND).observe(duration)
        record_reconcile_success(KIND, namespace, name)

    except kopf.TemporaryError:
        record_requeue(KIND, namespace, name)
        raise
    except kopf.PermanentError:
        record_reconcile_error(KIND, namespace, name, "permanent")
        raise
    except Exception as e:
        logger.error(f"Failed to reconcile ManagedCluster {namespace}/{name}: {e}")
        record_reconcile_error(KIND, namespace, name, type(e).__name__)
        raise kopf.TemporaryError(
            f"ManagedCluster reconciliation failed: {e}", delay=settings.ERROR_REQUEUE_INTERVAL
        )


async def infrastructure_provider_names(namespace: str, template_name: str) -> List[str]:
    template = await clients.find_object(clients.CLUSTER_TEMPLATES, template_name, namespace)
    if template is None:
        logger.warning(f"ClusterTemplate {namespace}/{template_name} not found, assuming no infrastructure providers")
        return []
    return infrastructure_providers(template.get("status", {}).get("providers"))


async def release_provider_clusters(namespace: str, name: str, template_name: str) -> bool:
    """
    Let provider clusters go once they have no machines left

    The blocking finalizer is removed from every provider cluster whose
    machines are gone. Returns True if at least one provider cluster still
    has machines.
    """
    blocked = False
    for provider in await infrastructure_provider_names(namespace, template_name):
        kinds = PROVIDER_KINDS.get(provider)
        if kinds is None:
            continue

        clusters = await clients.list_objects(kinds.cluster, namespace, labels={FLUX_HELM_CHART_NAME_KEY: name})
        if not clusters:
            logger.info(f"{kinds.cluster.kind} for {namespace}/{name} not found")
            continue
        cluster = clusters[0]
        cluster_name = cluster["metadata"]["name"]

        machines = await clients.list_objects(
            kinds.machine, namespace, labels={CLUSTER_NAME_LABEL_KEY: cluster_name}, limit=1
        )
        if machines:
            logger.info(f"{kinds.cluster.kind} {namespace}/{cluster_name} still has machines, keeping {BLOCKING_FINALIZER}")
            blocked = True
            continue

        patch = clients.remove_finalizer_patch(cluster, BLOCKING_FINALIZER)
        if patch:
            await clients.patch_object(kinds.cluster, cluster_name, patch, namespace)
            record_provider_cluster_released(namespace, provider)
            logger.info(f"Allowed {kinds.cluster.kind} {namespace}/{cluster_name} to stop")
    return blocked


async def delete_managed_cluster(managed_cluster: Dict) -> bool:
    """Tear down the release, then drop the deletion guard once nothing is left"""
    metadata = managed_cluster["metadata"]
    name, namespace = metadata["name"], metadata["namespace"]
    template_name = managed_cluster.get("spec", {}).get("template", "")

    release = await clients.find_object(clients.HELM_RELEASES, name, namespace)
    if release is None:
        if await release_provider_clusters(namespace, name, template_name):
            raise kopf.TemporaryError(
                f"Provider clusters of {namespace}/{name} still have machines",
                delay=settings.DEFAULT_REQUEUE_INTERVAL,
            )
        patch = clients.remove_finalizer_patch(managed_cluster, MANAGED_CLUSTER_FINALIZER)
        if patch:
            logger.info(f"Removing finalizer {MANAGED_CLUSTER_FINALIZER} from ManagedCluster {namespace}/{name}")
            await clients.patch_object(clients.MANAGED_CLUSTERS, name, patch, namespace)
        logger.info(f"ManagedCluster {namespace}/{name} deleted")
        return True

    await helm.delete_helm_release(name, namespace)
    # The Profile is deleted explicitly, garbage collection alone races with Sveltos cleanup
    await sveltos.delete_profile(namespace, name)
    await release_provider_clusters(namespace, name, template_name)

    raise kopf.TemporaryError(
        f"HelmRelease {namespace}/{name} still exists, retrying", delay=settings.DEFAULT_REQUEUE_INTERVAL
    )


async def handle_managed_cluster_deletion(namespace: str, name: str):
    """Deletion entry point, re-reads the object so the guard patch is never stale"""
    await reconcile_managed_cluster(namespace, name)
