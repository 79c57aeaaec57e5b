#!/usr/bin/env python3
"""
Helm chart sources, chart artifacts and HelmRelease objects

Charts are served by the Flux source-controller (HelmRepository and
HelmChart objects); releases are installed by the Flux helm-controller
(HelmRelease objects). This module only drives those objects. The helm
binary is used for one thing: a client-side dry-run render.
"""

import asyncio
import hashlib
import io
import logging
import os
import tarfile
import tempfile
from typing import Dict, List, Optional, Tuple

import httpx
import nodesemver
import yaml

import clients
import conditions
from config import settings

logger = logging.getLogger(__name__)

DEFAULT_REPO_NAME = "hmc-templates"
DEFAULT_REPO_TYPE = "oci"
DEFAULT_RECONCILE_INTERVAL = "10m"

HMC_MANAGED_LABEL_KEY = "hmc.mirantis.com/managed"
HMC_MANAGED_LABEL_VALUE = "true"

VALID_CHART_TYPES = ("", "application", "library")


class ChartError(Exception):
    """The chart could not be fetched or is structurally invalid"""


class ChartRenderError(ChartError):
    """The chart does not render with the given values"""


class Chart:
    """A downloaded chart: its metadata, default values and raw archive"""

    def __init__(self, metadata: Optional[Dict], values: Optional[Dict], archive: bytes = b""):
        self.metadata = metadata
        self.values = values or {}
        self.archive = archive

    @property
    def name(self) -> str:
        return (self.metadata or {}).get("name", "")

    @property
    def description(self) -> str:
        return (self.metadata or {}).get("description", "")

    @property
    def annotations(self) -> Dict[str, str]:
        return (self.metadata or {}).get("annotations") or {}

    def validate(self):
        """Structural checks on Chart.yaml, raises ChartError"""
        if self.metadata is None:
            raise ChartError("validation: chart.metadata is required")
        if not self.metadata.get("apiVersion"):
            raise ChartError("validation: chart.metadata.apiVersion is required")
        if not self.metadata.get("name"):
            raise ChartError("validation: chart.metadata.name is required")
        version = str(self.metadata.get("version") or "")
        if not version:
            raise ChartError("validation: chart.metadata.version is required")
        try:
            nodesemver.make_semver(version, loose=False)
        except ValueError:
            raise ChartError(f'validation: chart.metadata.version "{version}" is invalid')
        chart_type = self.metadata.get("type", "")
        if chart_type not in VALID_CHART_TYPES:
            raise ChartError("validation: chart.metadata.type must be application or library")


def load_chart(archive: bytes) -> Chart:
    """Read Chart.yaml and values.yaml from a chart tarball"""
    metadata = None
    values = None
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
            for member in tar.getmembers():
                parts = member.name.split("/")
                # Only files directly under the chart root directory
                if len(parts) != 2 or not member.isfile():
                    continue
                if parts[1] == "Chart.yaml":
                    metadata = yaml.safe_load(tar.extractfile(member).read()) or {}
                elif parts[1] == "values.yaml":
                    values = yaml.safe_load(tar.extractfile(member).read()) or {}
    except (tarfile.TarError, OSError, yaml.YAMLError) as e:
        raise ChartError(f"failed to load chart archive: {e}")
    return Chart(metadata, values, archive)


async def download_chart_from_artifact(artifact: Optional[Dict]) -> Chart:
    """Fetch the chart tarball behind a source-controller artifact"""
    if not artifact or not artifact.get("url"):
        raise ChartError("helm chart artifact is not ready yet")

    url = artifact["url"]
    try:
        async with httpx.AsyncClient(timeout=settings.CHART_DOWNLOAD_TIMEOUT) as client:
            response = await client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as e:
        raise ChartError(f"failed to download chart from {url}: {e}")

    content = response.content
    digest = artifact.get("digest", "")
    if digest.startswith("sha256:"):
        actual = hashlib.sha256(content).hexdigest()
        if actual != digest.split(":", 1)[1]:
            raise ChartError(f"artifact digest mismatch for {url}: got sha256:{actual}, want {digest}")

    logger.info(f"Downloaded chart artifact {url} ({len(content)} bytes)")
    return load_chart(content)


async def render_chart(chart: Chart, release_name: str, namespace: str, values: Optional[Dict]) -> str:
    """
    Dry-run install of the chart on the client side

    Runs `helm template` against the downloaded archive; nothing is sent to
    the cluster. Raises ChartRenderError when rendering fails or times out.
    """
    with tempfile.TemporaryDirectory(prefix="hmc-render-") as workdir:
        chart_path = os.path.join(workdir, "chart.tgz")
        values_path = os.path.join(workdir, "values.yaml")
        with open(chart_path, "wb") as f:
            f.write(chart.archive)
        with open(values_path, "w") as f:
            yaml.safe_dump(values or {}, f)

        cmd = [
            settings.HELM_BINARY, "template", release_name, chart_path,
            "--namespace", namespace,
            "--values", values_path,
        ]
        logger.debug(f"helm> {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ChartRenderError(f"failed to run {settings.HELM_BINARY}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=settings.HELM_RENDER_TIMEOUT
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ChartRenderError(f"rendering timed out after {settings.HELM_RENDER_TIMEOUT}s")
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

    if proc.returncode != 0:
        raise ChartRenderError(stderr.decode(errors="replace").strip()[:1000])
    return stdout.decode(errors="replace")


def artifact_ready(chart: Dict) -> Tuple[Optional[str], bool]:
    """
    Check whether a HelmChart has a usable artifact

    Returns (problem, report): problem is None when the artifact is ready;
    report tells whether the problem is a real failure worth surfacing, as
    opposed to the chart simply not being reconciled yet.
    """
    generation = chart.get("metadata", {}).get("generation")
    status = chart.get("status", {})
    for condition in status.get("conditions", []):
        if condition.get("type") != "Ready":
            continue
        if generation is not None and condition.get("observedGeneration") != generation:
            return "HelmChart was not reconciled yet, retrying", False
        if condition.get("status") != "True":
            return f"failed to download helm chart artifact: {condition.get('message', '')}", True
    if not status.get("artifact") or not status.get("url"):
        return "helm chart artifact is not ready yet", False
    return None, False


async def get_chart(chart_ref: Optional[Dict], default_namespace: str = "") -> Dict:
    """Fetch the HelmChart a chartRef points at"""
    if not chart_ref:
        raise ChartError("helm chart source is not provided")
    kind = chart_ref.get("kind", "HelmChart")
    if kind != clients.HELM_CHARTS.kind:
        raise ChartError(f"invalid chartRef kind {kind}, only {clients.HELM_CHARTS.kind} is supported")
    return await clients.get_object(
        clients.HELM_CHARTS,
        chart_ref["name"],
        chart_ref.get("namespace") or default_namespace,
    )


async def reconcile_default_repository(namespace: str) -> Dict:
    """Ensure the default HelmRepository exists in the namespace"""

    def mutate(repo: Dict):
        repo["spec"] = {
            "type": DEFAULT_REPO_TYPE,
            "url": settings.DEFAULT_OCI_REGISTRY,
            "interval": DEFAULT_RECONCILE_INTERVAL,
            "insecure": settings.INSECURE_REGISTRY,
        }
        if settings.REGISTRY_CREDENTIALS_SECRET:
            repo["spec"]["secretRef"] = {"name": settings.REGISTRY_CREDENTIALS_SECRET}
        repo["metadata"].setdefault("labels", {})[HMC_MANAGED_LABEL_KEY] = HMC_MANAGED_LABEL_VALUE

    repo, _ = await clients.create_or_update(clients.HELM_REPOSITORIES, DEFAULT_REPO_NAME, namespace, mutate)
    return repo


async def reconcile_chart(
    name: str, namespace: str, chart_name: str, chart_version: str, owner_ref: Optional[Dict]
) -> Dict:
    """Create or update the HelmChart pulling chart_name:chart_version from the default repository"""

    def mutate(chart: Dict):
        if owner_ref:
            chart["metadata"]["ownerReferences"] = [owner_ref]
        chart["metadata"].setdefault("labels", {})[HMC_MANAGED_LABEL_KEY] = HMC_MANAGED_LABEL_VALUE
        spec = chart.setdefault("spec", {})
        spec.update({
            "chart": chart_name,
            "version": chart_version,
            "sourceRef": {"kind": clients.HELM_REPOSITORIES.kind, "name": DEFAULT_REPO_NAME},
            "interval": DEFAULT_RECONCILE_INTERVAL,
        })

    chart, operation = await clients.create_or_update(clients.HELM_CHARTS, name, namespace, mutate)
    if operation != "unchanged":
        logger.info(f"HelmChart {namespace}/{name} {operation}")
    return chart


async def reconcile_helm_release(
    name: str,
    namespace: str,
    values: Optional[Dict] = None,
    owner_ref: Optional[Dict] = None,
    chart_ref: Optional[Dict] = None,
    depends_on: Optional[List[Dict]] = None,
    target_namespace: str = "",
    create_namespace: bool = False,
    interval: str = DEFAULT_RECONCILE_INTERVAL,
) -> Tuple[Dict, str]:
    """Create or update a HelmRelease; returns (release, operation)"""

    def mutate(release: Dict):
        metadata = release["metadata"]
        metadata.setdefault("labels", {})[HMC_MANAGED_LABEL_KEY] = HMC_MANAGED_LABEL_VALUE
        if owner_ref:
            metadata["ownerReferences"] = [owner_ref]
        spec = {
            "chartRef": chart_ref,
            "interval": interval,
            "releaseName": name,
            "install": {"createNamespace": create_namespace},
        }
        if values:
            spec["values"] = values
        if depends_on:
            spec["dependsOn"] = depends_on
        if target_namespace:
            spec["targetNamespace"] = target_namespace
        release["spec"] = spec

    release, operation = await clients.create_or_update(clients.HELM_RELEASES, name, namespace, mutate)
    if operation != "unchanged":
        logger.info(f"HelmRelease {namespace}/{name} {operation}")
    return release, operation


async def delete_helm_release(name: str, namespace: str):
    """Delete a HelmRelease, absent is fine"""
    await clients.delete_object(clients.HELM_RELEASES, name, namespace)


def release_owner_key(release: Dict) -> Optional[Tuple[str, Optional[str], str]]:
    """(kind, namespace, name) of the HMC object owning a HelmRelease, if any"""
    return clients.owner_key(
        release, (clients.MANAGED_CLUSTERS, clients.MANAGEMENTS)
    )


def release_ready_condition(release: Dict) -> Optional[Dict]:
    return conditions.find_condition(release.get("status", {}).get("conditions", []), conditions.READY)


def release_is_ready(release: Dict) -> bool:
    return conditions.is_ready(release.get("status", {}).get("conditions", []), conditions.READY)
