#!/usr/bin/env python3

import asyncio
import base64
import copy
import kubernetes
from kubernetes.client.rest import ApiException
import logging
import sys
import yaml
from collections import namedtuple
from typing import Callable, Dict, List, Optional, Tuple
import os
from pathlib import Path
logger = logging.getLogger(__name__)

MERGE_PATCH = "application/merge-patch+json"

# Coordinates of every kind this operator reads or writes
Resource = namedtuple("Resource", ["group", "version", "plural", "kind", "namespaced"])

HMC_GROUP = "hmc.mirantis.com"
HMC_VERSION = "v1alpha1"

CLUSTER_TEMPLATES = Resource(HMC_GROUP, HMC_VERSION, "clustertemplates", "ClusterTemplate", True)
SERVICE_TEMPLATES = Resource(HMC_GROUP, HMC_VERSION, "servicetemplates", "ServiceTemplate", True)
PROVIDER_TEMPLATES = Resource(HMC_GROUP, HMC_VERSION, "providertemplates", "ProviderTemplate", True)
MANAGED_CLUSTERS = Resource(HMC_GROUP, HMC_VERSION, "managedclusters", "ManagedCluster", True)
CREDENTIALS = Resource(HMC_GROUP, HMC_VERSION, "credentials", "Credential", True)
MANAGEMENTS = Resource(HMC_GROUP, HMC_VERSION, "managements", "Management", False)

HELM_REPOSITORIES = Resource("source.toolkit.fluxcd.io", "v1", "helmrepositories", "HelmRepository", True)
HELM_CHARTS = Resource("source.toolkit.fluxcd.io", "v1", "helmcharts", "HelmChart", True)
HELM_RELEASES = Resource("helm.toolkit.fluxcd.io", "v2", "helmreleases", "HelmRelease", True)
PROFILES = Resource("config.projectsveltos.io", "v1beta1", "profiles", "Profile", True)

CAPI_CLUSTERS = Resource("cluster.x-k8s.io", "v1beta1", "clusters", "Cluster", True)
CAPI_MACHINES = Resource("cluster.x-k8s.io", "v1beta1", "machines", "Machine", True)
AWS_CLUSTERS = Resource("infrastructure.cluster.x-k8s.io", "v1beta2", "awsclusters", "AWSCluster", True)
AZURE_CLUSTERS = Resource("infrastructure.cluster.x-k8s.io", "v1beta1", "azureclusters", "AzureCluster", True)
VSPHERE_CLUSTERS = Resource("infrastructure.cluster.x-k8s.io", "v1beta1", "vsphereclusters", "VSphereCluster", True)
VSPHERE_MACHINES = Resource("infrastructure.cluster.x-k8s.io", "v1beta1", "vspheremachines", "VSphereMachine", True)
AZURE_CLUSTER_IDENTITIES = Resource("infrastructure.cluster.x-k8s.io", "v1beta1", "azureclusteridentities", "AzureClusterIdentity", True)
VSPHERE_CLUSTER_IDENTITIES = Resource("infrastructure.cluster.x-k8s.io", "v1beta1", "vsphereclusteridentities", "VSphereClusterIdentity", False)

# Global Kubernetes clients, populated by setup_kubernetes_client()
api_client = None
core_v1 = None
custom_objects_api = None


def setup_kubernetes_client():
    global api_client, core_v1, custom_objects_api

    kubeconfig_path = os.environ.get("KUBECONFIG", "~/.kube/config")
    expanded_kubeconfig = os.path.expanduser(kubeconfig_path)
    kubeconfig_file = Path(expanded_kubeconfig)

    logger.info(f"KUBECONFIG variable: {kubeconfig_path}")

    loaded = False
    if kubeconfig_file.exists():
        try:
            kubernetes.config.load_kube_config(config_file=expanded_kubeconfig)
            logger.info(f"Loaded kubeconfig from {kubeconfig_file}")
            loaded = True
        except kubernetes.config.ConfigException as e:
            logger.warning(f"Failed to load kubeconfig: {e}")
    else:
        logger.warning(f"Kubeconfig file not found: {kubeconfig_file}")

    if not loaded:
        logger.info("Switching to in-cluster configuration")
        if not os.environ.get("KUBERNETES_SERVICE_HOST"):
            logger.error("KUBERNETES_SERVICE_HOST is not set, in-cluster config impossible")
        try:
            kubernetes.config.load_incluster_config()
            logger.info("Loaded in-cluster config")
        except kubernetes.config.ConfigException as e:
            logger.error(f"In-cluster connection error: {e}")
            sys.exit(1)

    api_client = kubernetes.client.ApiClient()
    core_v1 = kubernetes.client.CoreV1Api(api_client)
    custom_objects_api = kubernetes.client.CustomObjectsApi(api_client)


def is_not_found(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 404


def is_conflict(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 409


def label_selector(labels: Dict[str, str]) -> str:
    """Render an equality-based label selector"""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def owner_reference(body: dict, controller: bool = True) -> Dict:
    metadata = body.get("metadata", {})
    ref = {
        "apiVersion": body.get("apiVersion"),
        "kind": body.get("kind"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
    }
    if controller:
        ref["controller"] = True
        ref["blockOwnerDeletion"] = True
    return ref


def owner_key(body: Dict, owners) -> Optional[Tuple[str, Optional[str], str]]:
    """
    Map an object to the (kind, namespace, name) of its first matching owner

    Only owners whose group and kind appear in `owners` are considered.
    Cluster-scoped owners get a None namespace.
    """
    metadata = body.get("metadata", {})
    for ref in metadata.get("ownerReferences") or []:
        group = ref.get("apiVersion", "").split("/")[0]
        for resource in owners:
            if resource.group == group and resource.kind == ref.get("kind"):
                namespace = metadata.get("namespace") if resource.namespaced else None
                return resource.kind, namespace, ref.get("name")
    return None


async def get_object(resource: Resource, name: str, namespace: Optional[str] = None) -> Dict:
    """Get a custom object; raises ApiException (404 when absent)"""
    if resource.namespaced:
        return await asyncio.to_thread(
            custom_objects_api.get_namespaced_custom_object,
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            name=name,
        )
    return await asyncio.to_thread(
        custom_objects_api.get_cluster_custom_object,
        group=resource.group,
        version=resource.version,
        plural=resource.plural,
        name=name,
    )


async def find_object(resource: Resource, name: str, namespace: Optional[str] = None) -> Optional[Dict]:
    """Get a custom object, None when it does not exist"""
    try:
        return await get_object(resource, name, namespace)
    except ApiException as e:
        if e.status == 404:
            return None
        raise


async def list_objects(
    resource: Resource,
    namespace: Optional[str] = None,
    labels: Optional[Dict[str, str]] = None,
    limit: Optional[int] = None,
) -> List[Dict]:
    """List custom objects, optionally filtered by labels"""
    kwargs = {}
    if labels:
        kwargs["label_selector"] = label_selector(labels)
    if limit:
        kwargs["limit"] = limit

    if resource.namespaced and namespace:
        result = await asyncio.to_thread(
            custom_objects_api.list_namespaced_custom_object,
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            **kwargs,
        )
    else:
        result = await asyncio.to_thread(
            custom_objects_api.list_cluster_custom_object,
            group=resource.group,
            version=resource.version,
            plural=resource.plural,
            **kwargs,
        )
    return result.get("items", [])


async def create_object(resource: Resource, body: Dict) -> Dict:
    """Create a custom object"""
    metadata = body.setdefault("metadata", {})
    body.setdefault("apiVersion", f"{resource.group}/{resource.version}")
    body.setdefault("kind", resource.kind)
    try:
        if resource.namespaced:
            created = await asyncio.to_thread(
                custom_objects_api.create_namespaced_custom_object,
                group=resource.group,
                version=resource.version,
                namespace=metadata["namespace"],
                plural=resource.plural,
                body=body,
            )
        else:
            created = await asyncio.to_thread(
                custom_objects_api.create_cluster_custom_object,
                group=resource.group,
                version=resource.version,
                plural=resource.plural,
                body=body,
            )
        logger.info(f"Created {resource.kind}: {metadata.get('namespace', '')}/{metadata['name']}")
        return created
    except Exception as e:
        logger.error(f"Failed to create {resource.kind} {metadata.get('name')}: {e}")
        raise


async def replace_object(resource: Resource, body: Dict) -> Dict:
    """
    Replace a custom object

    The body must carry metadata.resourceVersion; a stale version is
    rejected by the API server with 409.
    """
    metadata = body["metadata"]
    if resource.namespaced:
        return await asyncio.to_thread(
            custom_objects_api.replace_namespaced_custom_object,
            group=resource.group,
            version=resource.version,
            namespace=metadata["namespace"],
            plural=resource.plural,
            name=metadata["name"],
            body=body,
        )
    return await asyncio.to_thread(
        custom_objects_api.replace_cluster_custom_object,
        group=resource.group,
        version=resource.version,
        plural=resource.plural,
        name=metadata["name"],
        body=body,
    )


async def replace_status(resource: Resource, body: Dict) -> Dict:
    """Replace the status subresource of a custom object"""
    metadata = body["metadata"]
    try:
        if resource.namespaced:
            result = await asyncio.to_thread(
                custom_objects_api.replace_namespaced_custom_object_status,
                group=resource.group,
                version=resource.version,
                namespace=metadata["namespace"],
                plural=resource.plural,
                name=metadata["name"],
                body=body,
            )
        else:
            result = await asyncio.to_thread(
                custom_objects_api.replace_cluster_custom_object_status,
                group=resource.group,
                version=resource.version,
                plural=resource.plural,
                name=metadata["name"],
                body=body,
            )
        logger.debug(f"Updated {resource.kind} status: {metadata['name']}")
        return result
    except Exception as e:
        logger.error(f"Failed to update {resource.kind} {metadata['name']} status: {e}")
        raise


async def patch_object(
    resource: Resource, name: str, patch: Dict, namespace: Optional[str] = None
) -> Dict:
    """
    Patch a custom object using JSON Merge Patch

    Include metadata.resourceVersion in the patch to make it conditional.
    """
    if resource.namespaced:
        return await asyncio.to_thread(
            custom_objects_api.patch_namespaced_custom_object,
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            name=name,
            body=patch,
            _content_type=MERGE_PATCH,
        )
    return await asyncio.to_thread(
        custom_objects_api.patch_cluster_custom_object,
        group=resource.group,
        version=resource.version,
        plural=resource.plural,
        name=name,
        body=patch,
        _content_type=MERGE_PATCH,
    )


async def delete_object(resource: Resource, name: str, namespace: Optional[str] = None) -> bool:
    """Delete a custom object; returns False if it was already absent"""
    try:
        if resource.namespaced:
            await asyncio.to_thread(
                custom_objects_api.delete_namespaced_custom_object,
                group=resource.group,
                version=resource.version,
                namespace=namespace,
                plural=resource.plural,
                name=name,
            )
        else:
            await asyncio.to_thread(
                custom_objects_api.delete_cluster_custom_object,
                group=resource.group,
                version=resource.version,
                plural=resource.plural,
                name=name,
            )
        logger.info(f"Deleted {resource.kind}: {namespace or ''}/{name}")
        return True
    except ApiException as e:
        if e.status == 404:
            return False
        logger.error(f"Failed to delete {resource.kind} {name}: {e}")
        raise


async def create_or_update(
    resource: Resource, name: str, namespace: Optional[str], mutate: Callable[[Dict], None]
) -> Tuple[Dict, str]:
    """
    Fetch the object, apply `mutate` and write it back only if it changed

    Returns the stored object and one of "created", "updated", "unchanged".
    """
    current = await find_object(resource, name, namespace)
    if current is None:
        metadata = {"name": name}
        if namespace:
            metadata["namespace"] = namespace
        desired = {
            "apiVersion": f"{resource.group}/{resource.version}",
            "kind": resource.kind,
            "metadata": metadata,
        }
        mutate(desired)
        return await create_object(resource, desired), "created"

    desired = copy.deepcopy(current)
    mutate(desired)
    if desired == current:
        return current, "unchanged"

    updated = await replace_object(resource, desired)
    logger.info(f"Updated {resource.kind}: {namespace or ''}/{name}")
    return updated, "updated"


def remove_finalizer_patch(body: Dict, finalizer: str) -> Optional[Dict]:
    """
    Merge patch that drops `finalizer`, computed from the original object

    Returns None if the finalizer is not present.
    """
    metadata = body.get("metadata", {})
    original = metadata.get("finalizers") or []
    if finalizer not in original:
        return None
    return {
        "metadata": {
            "finalizers": [f for f in original if f != finalizer],
            "resourceVersion": metadata.get("resourceVersion"),
        }
    }


def add_finalizer_patch(body: Dict, finalizer: str) -> Optional[Dict]:
    """Merge patch that appends `finalizer`, None if already present"""
    metadata = body.get("metadata", {})
    original = metadata.get("finalizers") or []
    if finalizer in original:
        return None
    return {
        "metadata": {
            "finalizers": list(original) + [finalizer],
            "resourceVersion": metadata.get("resourceVersion"),
        }
    }


RECONCILE_REQUESTED_ANNOTATION = "hmc.mirantis.com/reconcile-requested"


async def request_reconcile(resource: Resource, name: str, namespace: Optional[str], token: str):
    """
    Ask for another pass over an object by touching an annotation

    The operator sees the annotation change as an update of the object.
    A missing object is ignored.
    """
    patch = {"metadata": {"annotations": {RECONCILE_REQUESTED_ANNOTATION: token}}}
    try:
        await patch_object(resource, name, patch, namespace)
        logger.debug(f"Requested reconcile of {resource.kind} {namespace or ''}/{name}")
    except ApiException as e:
        if e.status == 404:
            return
        raise


async def get_secret_data(secret_name: str, namespace: str) -> Dict[str, str]:
    """Get decoded data from a Kubernetes Secret"""
    secret = await asyncio.to_thread(core_v1.read_namespaced_secret, secret_name, namespace)
    if not secret.data:
        return {}
    return {
        key: base64.b64decode(value).decode("utf-8") if value else ""
        for key, value in secret.data.items()
    }


def remote_core_api(kubeconfig: str):
    """CoreV1Api talking to the cluster described by a kubeconfig document"""
    config_dict = yaml.safe_load(kubeconfig)
    return kubernetes.client.CoreV1Api(kubernetes.config.new_client_from_config_dict(config_dict))


async def apply_secret(api, secret_name: str, namespace: str, data: Dict[str, str]):
    """Create or overwrite a Secret through the given CoreV1Api"""
    secret = kubernetes.client.V1Secret(
        metadata=kubernetes.client.V1ObjectMeta(name=secret_name, namespace=namespace),
        data={
            key: base64.b64encode(value.encode("utf-8")).decode("utf-8")
            for key, value in data.items()
        },
    )
    try:
        await asyncio.to_thread(api.create_namespaced_secret, namespace, secret)
        logger.info(f"Created secret: {namespace}/{secret_name}")
    except ApiException as e:
        if e.status != 409:
            raise
        await asyncio.to_thread(api.replace_namespaced_secret, secret_name, namespace, secret)
        logger.info(f"Replaced secret: {namespace}/{secret_name}")


async def apply_config_map(api, name: str, namespace: str, data: Dict[str, str]):
    """Create or overwrite a ConfigMap through the given CoreV1Api"""
    config_map = kubernetes.client.V1ConfigMap(
        metadata=kubernetes.client.V1ObjectMeta(name=name, namespace=namespace),
        data=data,
    )
    try:
        await asyncio.to_thread(api.create_namespaced_config_map, namespace, config_map)
        logger.info(f"Created config map: {namespace}/{name}")
    except ApiException as e:
        if e.status != 409:
            raise
        await asyncio.to_thread(api.replace_namespaced_config_map, name, namespace, config_map)
        logger.info(f"Replaced config map: {namespace}/{name}")
