#!/usr/bin/env python3
"""
Cloud provider credentials for provisioned clusters

The cloud controller manager (and on vSphere the CSI driver) running inside
a new cluster needs the provider credentials the management cluster already
holds. They are written into kube-system of the new cluster through the
kubeconfig Secret Cluster API creates next to the cluster.
"""

import json
import logging
from typing import Dict, List, Tuple

import yaml
from kubernetes.client.rest import ApiException

import clients
from config import settings

logger = logging.getLogger(__name__)

TARGET_NAMESPACE = "kube-system"

KUBECONFIG_SECRET_SUFFIX = "-kubeconfig"
KUBECONFIG_SECRET_KEY = "value"

AZURE_SECRET_NAME = "azure-cloud-provider"
VSPHERE_SECRET_NAME = "vsphere-cloud-secret"
VSPHERE_CONFIG_NAME = "cloud-config"
VSPHERE_CSI_SECRET_NAME = "vcenter-config-secret"

CLUSTER_NAME_LABEL_KEY = "cluster.x-k8s.io/cluster-name"

VSPHERE_CSI_CONFIG = """
[Global]
cluster-id = "{cluster_id}"

[VirtualCenter "{server}"]
insecure-flag = "true"
user = "{username}"
password = "{password}"
port = "443"
datacenters = "{datacenter}"
"""


class PropagationError(Exception):
    """Credentials could not be assembled or written"""


async def _get(resource: clients.Resource, name: str, namespace=None) -> Dict:
    try:
        return await clients.get_object(resource, name, namespace)
    except ApiException as e:
        raise PropagationError(f"failed to get {resource.kind} {name}: {e.reason}")


async def _secret_data(name: str, namespace: str) -> Dict[str, str]:
    try:
        return await clients.get_secret_data(name, namespace)
    except ApiException as e:
        raise PropagationError(f"failed to get Secret {namespace}/{name}: {e.reason}")


async def remote_api_for(managed_cluster: Dict):
    """CoreV1Api of the cluster provisioned for a ManagedCluster"""
    metadata = managed_cluster["metadata"]
    secret_name = metadata["name"] + KUBECONFIG_SECRET_SUFFIX
    try:
        data = await clients.get_secret_data(secret_name, metadata["namespace"])
    except ApiException as e:
        raise PropagationError(
            f"failed to get kubeconfig secret for cluster {metadata['namespace']}/{metadata['name']}: {e.reason}"
        )
    if not data.get(KUBECONFIG_SECRET_KEY):
        raise PropagationError(f"kubeconfig secret {metadata['namespace']}/{secret_name} has no {KUBECONFIG_SECRET_KEY}")
    return clients.remote_core_api(data[KUBECONFIG_SECRET_KEY])


def azure_cloud_config(azure_cluster: Dict, identity: Dict, client_secret: str) -> str:
    """azure.json for the Azure cloud controller manager"""
    spec = azure_cluster.get("spec", {})
    identity_spec = identity.get("spec", {})
    network = spec.get("networkSpec", {})
    vnet = network.get("vnet", {})
    subnet = (network.get("subnets") or [{}])[0]

    config = {
        "cloud": spec.get("azureEnvironment", ""),
        "tenantId": identity_spec.get("tenantID", ""),
        "subscriptionId": spec.get("subscriptionID", ""),
        "aadClientId": identity_spec.get("clientID", ""),
        "aadClientSecret": client_secret,
        "resourceGroup": spec.get("resourceGroup", ""),
        "securityGroupName": subnet.get("securityGroup", {}).get("name", ""),
        "securityGroupResourceGroup": vnet.get("resourceGroup", ""),
        "location": spec.get("location", ""),
        "vmType": "vmss",
        "vnetName": vnet.get("name", ""),
        "vnetResourceGroup": vnet.get("resourceGroup", ""),
        "subnetName": subnet.get("name", ""),
        "loadBalancerSku": "Standard",
        "loadBalancerName": "",
        "maximumLoadBalancerRuleCount": 250,
        "useManagedIdentityExtension": False,
        "useInstanceMetadata": True,
    }
    return json.dumps(config)


def vsphere_ccm_configs(
    vsphere_cluster: Dict, credentials: Dict[str, str], machine: Dict
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Secret data and ConfigMap data for the vSphere cloud controller manager"""
    server = vsphere_cluster.get("spec", {}).get("server", "")
    secret_data = {
        f"{server}.username": credentials.get("username", ""),
        f"{server}.password": credentials.get("password", ""),
    }
    config = {
        "global": {
            "port": 443,
            "insecureFlag": True,
            "secretName": VSPHERE_SECRET_NAME,
            "secretNamespace": TARGET_NAMESPACE,
        },
        "vcenter": {
            server: {
                "server": server,
                "datacenters": [machine.get("spec", {}).get("datacenter", "")],
            },
        },
        "labels": {
            "region": "k8s-region",
            "zone": "k8s-zone",
        },
    }
    return secret_data, {"vsphere.conf": yaml.safe_dump(config, default_flow_style=False)}


def vsphere_csi_config(vsphere_cluster: Dict, credentials: Dict[str, str], machine: Dict) -> str:
    return VSPHERE_CSI_CONFIG.format(
        cluster_id=vsphere_cluster["metadata"]["name"],
        server=vsphere_cluster.get("spec", {}).get("server", ""),
        username=credentials.get("username", ""),
        password=credentials.get("password", ""),
        datacenter=machine.get("spec", {}).get("datacenter", ""),
    )


async def propagate_azure_secrets(managed_cluster: Dict, api):
    name = managed_cluster["metadata"]["name"]
    namespace = managed_cluster["metadata"]["namespace"]

    azure_cluster = await _get(clients.AZURE_CLUSTERS, name, namespace)
    identity_ref = azure_cluster.get("spec", {}).get("identityRef", {})
    identity = await _get(
        clients.AZURE_CLUSTER_IDENTITIES,
        identity_ref.get("name", ""),
        identity_ref.get("namespace") or namespace,
    )
    secret_ref = identity.get("spec", {}).get("clientSecret", {})
    secret = await _secret_data(secret_ref.get("name", ""), secret_ref.get("namespace") or namespace)

    cloud_config = azure_cloud_config(azure_cluster, identity, secret.get("clientSecret", ""))
    await clients.apply_secret(api, AZURE_SECRET_NAME, TARGET_NAMESPACE, {"cloud-config": cloud_config})


async def propagate_vsphere_secrets(managed_cluster: Dict, api):
    name = managed_cluster["metadata"]["name"]
    namespace = managed_cluster["metadata"]["namespace"]

    vsphere_cluster = await _get(clients.VSPHERE_CLUSTERS, name, namespace)
    identity_ref = vsphere_cluster.get("spec", {}).get("identityRef", {})
    # VSphereClusterIdentity is cluster-scoped, its Secret lives in the system namespace
    identity = await _get(clients.VSPHERE_CLUSTER_IDENTITIES, identity_ref.get("name", ""))
    secret = await _secret_data(identity.get("spec", {}).get("secretName", ""), settings.SYSTEM_NAMESPACE)

    machines = await clients.list_objects(
        clients.VSPHERE_MACHINES, namespace, labels={CLUSTER_NAME_LABEL_KEY: name}, limit=1
    )
    if not machines:
        raise PropagationError(f"no VSphereMachines found for cluster {name}")

    ccm_secret, ccm_config = vsphere_ccm_configs(vsphere_cluster, secret, machines[0])
    csi_config = vsphere_csi_config(vsphere_cluster, secret, machines[0])

    await clients.apply_secret(api, VSPHERE_SECRET_NAME, TARGET_NAMESPACE, ccm_secret)
    await clients.apply_config_map(api, VSPHERE_CONFIG_NAME, TARGET_NAMESPACE, ccm_config)
    await clients.apply_secret(api, VSPHERE_CSI_SECRET_NAME, TARGET_NAMESPACE, {"csi-vsphere.conf": csi_config})


# Infrastructure provider -> (display name, propagation function)
PROPAGATORS = {
    "azure": ("Azure", propagate_azure_secrets),
    "vsphere": ("vSphere", propagate_vsphere_secrets),
}

# Providers whose cloud controller needs nothing from us
SKIPPED_PROVIDERS: List[str] = ["aws"]
