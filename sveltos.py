#!/usr/bin/env python3
"""
Sveltos Profile objects for services attached to managed clusters
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import yaml

import clients
from helm import HMC_MANAGED_LABEL_KEY, HMC_MANAGED_LABEL_VALUE

logger = logging.getLogger(__name__)

MAX_INT32 = 2**31 - 1
MIN_PRIORITY = 1
MAX_PRIORITY = MAX_INT32 - MIN_PRIORITY

HELM_CHART_ACTION_INSTALL = "Install"


@dataclass
class HelmChartOpts:
    repository_url: str
    repository_name: str
    chart_name: str
    chart_version: str
    release_name: str
    release_namespace: str
    values: Optional[Dict] = None
    plain_http: bool = False
    insecure_skip_tls_verify: bool = False


def priority_to_tier(priority: int) -> int:
    """Sveltos tiers are inverted priorities; the lowest tier wins"""
    if MIN_PRIORITY <= priority <= MAX_PRIORITY:
        return MAX_INT32 - priority
    raise ValueError(
        f"invalid value {priority}, priority has to be between {MIN_PRIORITY} and {MAX_PRIORITY}"
    )


def helm_chart_spec(opts: HelmChartOpts) -> Dict:
    chart = {
        "repositoryURL": opts.repository_url,
        "repositoryName": opts.repository_name,
        "chartName": opts.chart_name,
        "chartVersion": opts.chart_version,
        "releaseName": opts.release_name,
        "releaseNamespace": opts.release_namespace,
        "helmChartAction": HELM_CHART_ACTION_INSTALL,
        "registryCredentialsConfig": {
            "plainHTTP": opts.plain_http,
            # plainHTTP makes TLS settings irrelevant
            "insecureSkipTLSVerify": False if opts.plain_http else opts.insecure_skip_tls_verify,
        },
    }
    if opts.values:
        chart["values"] = yaml.safe_dump(opts.values, default_flow_style=False)
    return chart


def profile_spec(
    match_labels: Dict[str, str],
    chart_opts: List[HelmChartOpts],
    priority: int,
    stop_on_conflict: bool,
) -> Dict:
    return {
        "clusterSelector": {"matchLabels": dict(match_labels)},
        "tier": priority_to_tier(priority),
        "continueOnConflict": not stop_on_conflict,
        "helmCharts": [helm_chart_spec(opts) for opts in chart_opts],
    }


async def reconcile_profile(
    namespace: str,
    name: str,
    match_labels: Dict[str, str],
    owner_ref: Optional[Dict],
    chart_opts: List[HelmChartOpts],
    priority: int,
    stop_on_conflict: bool,
) -> Dict:
    """
    Create or update a Profile

    The spec is replaced as a whole, so an empty chart_opts list removes
    every chart from the Profile.
    """
    spec = profile_spec(match_labels, chart_opts, priority, stop_on_conflict)

    def mutate(profile: Dict):
        metadata = profile["metadata"]
        metadata.setdefault("labels", {})[HMC_MANAGED_LABEL_KEY] = HMC_MANAGED_LABEL_VALUE
        if owner_ref:
            metadata["ownerReferences"] = [owner_ref]
        profile["spec"] = spec

    profile, operation = await clients.create_or_update(clients.PROFILES, name, namespace, mutate)
    if operation != "unchanged":
        logger.info(f"Successfully {operation} Profile {namespace}/{name}")
    return profile


async def delete_profile(namespace: str, name: str):
    """Delete a Profile, absent is fine"""
    await clients.delete_object(clients.PROFILES, name, namespace)
