#!/usr/bin/env python3
"""
Management: installs the management-plane components in dependency order

hmc <- capi <- every provider. Each component is a HelmRelease in the system
namespace built from a ProviderTemplate of the same namespace.
"""

import copy
import kopf
import logging
import time
from typing import Dict, List, Optional

from kubernetes.client.rest import ApiException

import clients
import helm
from config import settings

from metrics import (
    record_reconcile_success,
    record_reconcile_error,
    record_requeue,
    update_component_metrics,
    reconcile_duration,
)

logger = logging.getLogger(__name__)

MANAGEMENT_NAME = "hmc"
KIND = clients.MANAGEMENTS.kind

CORE_HMC = "hmc"
CORE_CAPI = "capi"

DEFAULT_CORE = {
    CORE_HMC: {"template": "hmc"},
    CORE_CAPI: {"template": "cluster-api"},
}

DEFAULT_PROVIDERS = [
    {"name": "k0smotron"},
    {"name": "cluster-api-provider-aws"},
    {"name": "cluster-api-provider-azure"},
    {"name": "projectsveltos"},
]

# Providers installed into their own namespace
PROVIDER_TARGET_NAMESPACES = {
    "projectsveltos": "projectsveltos",
}


class ComponentError(Exception):
    """A single component could not be installed"""


class ComponentsError(Exception):
    """One or more components failed; the message lists every failure"""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class Component:
    def __init__(self, name: str, template: str, config: Optional[Dict], depends_on: List[str]):
        self.name = name
        self.template = template
        self.config = config
        self.depends_on = depends_on
        self.target_namespace = PROVIDER_TARGET_NAMESPACES.get(name, "")

    def __repr__(self):
        return f"Component({self.name}, template={self.template})"


def default_management_spec() -> Dict:
    return {
        "core": copy.deepcopy(DEFAULT_CORE),
        "providers": copy.deepcopy(DEFAULT_PROVIDERS),
    }


def apply_defaults(spec: Dict) -> bool:
    """Fill in the default core and providers; True if spec changed"""
    if spec.get("core"):
        return False
    spec["core"] = copy.deepcopy(DEFAULT_CORE)
    if spec.get("providers") is None:
        spec["providers"] = copy.deepcopy(DEFAULT_PROVIDERS)
    return True


def components_in_order(spec: Dict) -> List[Component]:
    core = spec.get("core", {})
    hmc = core.get(CORE_HMC) or {}
    capi = core.get(CORE_CAPI) or {}

    components = [
        Component(CORE_HMC, hmc.get("template") or DEFAULT_CORE[CORE_HMC]["template"], hmc.get("config"), []),
        Component(CORE_CAPI, capi.get("template") or DEFAULT_CORE[CORE_CAPI]["template"], capi.get("config"), [CORE_HMC]),
    ]
    for provider in spec.get("providers") or []:
        components.append(Component(
            provider["name"],
            provider.get("template") or provider["name"],
            provider.get("config"),
            [CORE_CAPI],
        ))
    return components


def merge_providers(available: List[Dict], providers: List[Dict]) -> List[Dict]:
    """Union by name, later entries win; sorted by name"""
    merged = {p["name"]: p for p in available}
    for provider in providers:
        merged[provider["name"]] = provider
    return [merged[name] for name in sorted(merged)]


async def reconcile_component(management: Dict, component: Component) -> List[Dict]:
    """Install one component; returns the providers it exposes"""
    namespace = settings.SYSTEM_NAMESPACE
    template = await clients.find_object(clients.PROVIDER_TEMPLATES, component.template, namespace)
    if template is None:
        raise ComponentError(f"Failed to get ProviderTemplate {namespace}/{component.template}: not found")

    template_status = template.get("status", {})
    if not template_status.get("valid"):
        raise ComponentError(f"ProviderTemplate {namespace}/{component.template} is not marked as valid")

    # Template defaults apply when the component has no config of its own
    values = component.config if component.config is not None else template_status.get("config")

    try:
        await helm.reconcile_helm_release(
            component.name,
            namespace,
            values=values,
            owner_ref=clients.owner_reference(management),
            chart_ref=template_status.get("chartRef"),
            depends_on=[{"name": dep, "namespace": namespace} for dep in component.depends_on],
            target_namespace=component.target_namespace,
            create_namespace=bool(component.target_namespace),
        )
    except ApiException as e:
        raise ComponentError(f"error reconciling HelmRelease {namespace}/{component.name}: {e}")

    return template_status.get("providers") or []


async def reconcile(name: str):
    management = await clients.find_object(clients.MANAGEMENTS, name)
    if management is None:
        logger.info(f"Management {name} not found, ignoring since object must be deleted")
        return

    spec = management.setdefault("spec", {})
    if apply_defaults(spec):
        await clients.replace_object(clients.MANAGEMENTS, management)
        logger.info(f"Applied default configuration to Management {name}")
        return

    errors = []
    components_status = {}
    available = []

    for component in components_in_order(spec):
        try:
            providers = await reconcile_component(management, component)
        except ComponentError as e:
            logger.error(f"Component {component.name} of Management {name} failed: {e}")
            errors.append(str(e))
            components_status[component.name] = {"success": False, "error": str(e)}
            update_component_metrics(component.name, False)
            continue

        components_status[component.name] = {"success": True, "error": ""}
        update_component_metrics(component.name, True)
        available = merge_providers(available, providers)

    status = management.setdefault("status", {})
    status["observedGeneration"] = management["metadata"].get("generation")
    status["components"] = components_status
    status["availableProviders"] = available
    await clients.replace_status(clients.MANAGEMENTS, management)

    if errors:
        raise ComponentsError(errors)


async def reconcile_management(name: str):
    """Main reconciliation point for Management"""
    logger.info(f"Reconciling Management: {name}")

    start_time = time.time()

    try:
        await reconcile(name)

        duration = time.time() - start_time
        reconcile_duration.labels(kind=KIND).observe(duration)
        record_reconcile_success(KIND, "", name)

    except kopf.TemporaryError:
        record_requeue(KIND, "", name)
        raise
    except kopf.PermanentError:
        record_reconcile_error(KIND, "", name, "permanent")
        raise
    except Exception as e:
        logger.error(f"Failed to reconcile Management {name}: {e}")
        record_reconcile_error(KIND, "", name, type(e).__name__)
        raise kopf.TemporaryError(
            f"Management reconciliation failed: {e}", delay=settings.ERROR_REQUEUE_INTERVAL
        )


async def ensure_management():
    """Create the Management singleton with the default configuration"""
    if not settings.CREATE_MANAGEMENT:
        return
    if await clients.find_object(clients.MANAGEMENTS, MANAGEMENT_NAME) is not None:
        return

    try:
        await clients.create_object(clients.MANAGEMENTS, {
            "metadata": {"name": MANAGEMENT_NAME},
            "spec": default_management_spec(),
        })
    except Exception as e:
        # Another replica may have created it meanwhile
        if not clients.is_conflict(e):
            raise
