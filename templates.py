#!/usr/bin/env python3
"""
Template variants

ClusterTemplate, ServiceTemplate and ProviderTemplate share the same chart
spec and common status fields; each variant adds its own status fields when
providers are filled in from the chart metadata.
"""

import logging
from typing import Dict, List, Optional

import nodesemver

import clients
from compatibility import parse_version

logger = logging.getLogger(__name__)

CHART_ANNOTATION_PROVIDERS = "cluster.x-k8s.io/provider"
CHART_ANNOTATION_K8S_VERSION = "hmc.mirantis.com/k8s-version"
CHART_ANNOTATION_K8S_CONSTRAINT = "hmc.mirantis.com/k8s-version-constraint"

INFRASTRUCTURE_PREFIX = "infrastructure-"


class TemplateError(Exception):
    """Template metadata cannot be turned into a status"""


def parse_providers(annotation: str) -> List[Dict[str, str]]:
    """
    Parse "name[ versionOrConstraint]" entries separated by commas

    Duplicates are dropped and the result is sorted by name.
    """
    providers = {}
    for entry in annotation.split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(None, 1)
        name = parts[0]
        version = parts[1].strip() if len(parts) > 1 else ""
        providers[name] = version
    return [
        {"name": name, "versionOrConstraint": providers[name]}
        for name in sorted(providers)
    ]


def provider_tuples(providers: Optional[List[Dict]]) -> List[tuple]:
    return [
        (p.get("name", ""), p.get("versionOrConstraint", ""))
        for p in providers or []
    ]


def infrastructure_providers(providers: Optional[List[Dict]]) -> List[str]:
    """Names of infrastructure providers, without the prefix"""
    names = []
    for provider in providers or []:
        name = provider.get("name", "")
        idx = name.find(INFRASTRUCTURE_PREFIX)
        if idx > -1:
            names.append(name[idx + len(INFRASTRUCTURE_PREFIX):])
    return names


class Template:
    """A stored template object"""

    resource: clients.Resource = None

    def __init__(self, body: Dict):
        self.body = body
        self.body.setdefault("status", {})

    @property
    def name(self) -> str:
        return self.body["metadata"]["name"]

    @property
    def namespace(self) -> str:
        return self.body["metadata"].get("namespace", "")

    @property
    def kind(self) -> str:
        return self.resource.kind

    @property
    def spec(self) -> Dict:
        return self.body.get("spec", {})

    @property
    def status(self) -> Dict:
        return self.body["status"]

    def helm_spec(self) -> Dict:
        return self.spec.get("helm", {})

    @property
    def valid(self) -> bool:
        return bool(self.status.get("valid"))

    @property
    def providers(self) -> List[Dict]:
        return self.status.get("providers", [])

    def set_invalid(self, message: str):
        self.status["valid"] = False
        self.status["validationError"] = message

    def fill_status_with_providers(self, annotations: Dict[str, str]):
        spec_providers = self.spec.get("providers")
        if spec_providers:
            annotation = ",".join(
                f"{p['name']} {p.get('versionOrConstraint', '')}".strip()
                for p in spec_providers
            )
        else:
            annotation = annotations.get(CHART_ANNOTATION_PROVIDERS, "")
        self.status["providers"] = parse_providers(annotation)

    @staticmethod
    def variant(kind: str) -> type:
        for variant in (ClusterTemplate, ServiceTemplate, ProviderTemplate):
            if variant.resource.kind == kind:
                return variant
        raise ValueError(f"unknown template kind {kind}")

    @classmethod
    def for_kind(cls, kind: str, body: Dict) -> "Template":
        return cls.variant(kind)(body)


class ClusterTemplate(Template):
    resource = clients.CLUSTER_TEMPLATES

    def fill_status_with_providers(self, annotations: Dict[str, str]):
        super().fill_status_with_providers(annotations)

        version = self.spec.get("k8sVersion") or annotations.get(CHART_ANNOTATION_K8S_VERSION, "")
        if not version:
            self.status.pop("k8sVersion", None)
            return
        try:
            parse_version(version)
        except ValueError as e:
            raise TemplateError(
                f"failed to parse kubernetes version {version} for ClusterTemplate "
                f"{self.namespace}/{self.name}: {e}"
            )
        self.status["k8sVersion"] = version


class ServiceTemplate(Template):
    resource = clients.SERVICE_TEMPLATES

    def fill_status_with_providers(self, annotations: Dict[str, str]):
        super().fill_status_with_providers(annotations)

        constraint = self.spec.get("k8sConstraint") or annotations.get(CHART_ANNOTATION_K8S_CONSTRAINT, "")
        if not constraint:
            self.status.pop("k8sConstraint", None)
            return
        try:
            nodesemver.make_range(constraint, loose=False)
        except ValueError as e:
            raise TemplateError(
                f"failed to parse kubernetes constraint {constraint} for ServiceTemplate "
                f"{self.namespace}/{self.name}: {e}"
            )
        self.status["k8sConstraint"] = constraint


class ProviderTemplate(Template):
    resource = clients.PROVIDER_TEMPLATES
