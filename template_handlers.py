#!/usr/bin/env python3

import kopf
import logging
import time
from typing import Dict, Optional, Tuple

from kubernetes.client.rest import ApiException

import clients
import helm
from compatibility import check_compatibility
from config import settings
from templates import Template, TemplateError, provider_tuples

from metrics import (
    record_reconcile_success,
    record_reconcile_error,
    record_requeue,
    update_template_metrics,
    reconcile_duration,
)

logger = logging.getLogger(__name__)

MANAGEMENT_NAME = "hmc"

TEMPLATE_RESOURCES = (
    clients.CLUSTER_TEMPLATES,
    clients.SERVICE_TEMPLATES,
    clients.PROVIDER_TEMPLATES,
)


def chart_owner_key(chart: Dict) -> Optional[Tuple[str, Optional[str], str]]:
    """(kind, namespace, name) of the template owning a HelmChart, if any"""
    return clients.owner_key(chart, TEMPLATE_RESOURCES)


async def update_status(template: Template):
    template.status["observedGeneration"] = template.body["metadata"].get("generation")
    await clients.replace_status(template.resource, template.body)
    update_template_metrics(template.kind, template.namespace, template.name, template.valid)


async def invalidate(template: Template, message: str):
    logger.warning(f"{template.kind} {template.namespace}/{template.name} is invalid: {message}")
    template.set_invalid(message)
    await update_status(template)


async def reconcile_chart_source(template: Template) -> Optional[Dict]:
    """
    The HelmChart behind a template

    A directly referenced chart is only read; otherwise the default
    repository and a chart owned by the template are created or updated.
    Returns None when the template does not describe any chart source.
    """
    helm_spec = template.helm_spec()
    if helm_spec.get("chartRef"):
        return await helm.get_chart(helm_spec["chartRef"], template.namespace)

    if not helm_spec.get("chartName"):
        return None

    await helm.reconcile_default_repository(template.namespace)
    return await helm.reconcile_chart(
        template.name,
        template.namespace,
        helm_spec["chartName"],
        helm_spec.get("chartVersion", ""),
        clients.owner_reference(template.body),
    )


async def validate_compatibility(template: Template):
    """Check the providers a cluster template needs against what Management exposes"""
    management = await clients.find_object(clients.MANAGEMENTS, MANAGEMENT_NAME)
    if management is None:
        template.status["compatibilityError"] = "waiting for Management object"
        await update_status(template)
        raise kopf.TemporaryError(
            "Management object does not exist yet", delay=settings.DEFAULT_REQUEUE_INTERVAL
        )

    result = check_compatibility(
        provider_tuples(management.get("status", {}).get("availableProviders")),
        provider_tuples(template.providers),
    )
    template.status["compatibilityError"] = result.message
    await update_status(template)


async def reconcile(kind: str, namespace: str, name: str):
    resource = Template.variant(kind).resource
    body = await clients.find_object(resource, name, namespace)
    if body is None:
        logger.info(f"{kind} {namespace}/{name} not found, ignoring since object must be deleted")
        return
    template = Template.for_kind(kind, body)

    logger.info(f"Reconciling helm-controller objects for {kind} {namespace}/{name}")
    try:
        chart_source = await reconcile_chart_source(template)
    except helm.ChartError as e:
        await invalidate(template, str(e))
        return
    except ApiException as e:
        if not clients.is_not_found(e):
            raise
        await invalidate(template, f"failed to get helm chart source: {e.reason}")
        return

    if chart_source is None:
        await invalidate(template, "neither chartName nor chartRef is set")
        return

    problem, report = helm.artifact_ready(chart_source)
    if problem:
        logger.info(f"HelmChart artifact for {kind} {namespace}/{name} is not ready: {problem}")
        if report:
            template.status["validationError"] = problem
            await update_status(template)
        raise kopf.TemporaryError(problem, delay=settings.DEFAULT_REQUEUE_INTERVAL)

    logger.info(f"Downloading Helm chart for {kind} {namespace}/{name}")
    try:
        chart = await helm.download_chart_from_artifact(chart_source["status"]["artifact"])
    except helm.ChartError as e:
        await invalidate(template, f"failed to download chart: {e}")
        return

    logger.info(f"Validating Helm chart for {kind} {namespace}/{name}")
    try:
        chart.validate()
    except helm.ChartError as e:
        await invalidate(template, str(e))
        return

    try:
        template.fill_status_with_providers(chart.annotations)
    except TemplateError as e:
        await invalidate(template, str(e))
        return

    template.status["config"] = chart.values
    template.status["description"] = chart.description
    template.status["chartRef"] = {
        "kind": clients.HELM_CHARTS.kind,
        "name": chart_source["metadata"]["name"],
        "namespace": chart_source["metadata"]["namespace"],
    }
    template.status["valid"] = True
    template.status["validationError"] = ""
    logger.info(f"Chart validation completed successfully for {kind} {namespace}/{name}")

    if kind == clients.CLUSTER_TEMPLATES.kind:
        await validate_compatibility(template)
    else:
        await update_status(template)


async def reconcile_template(kind: str, namespace: str, name: str):
    """Main reconciliation point for ClusterTemplate, ServiceTemplate and ProviderTemplate"""
    logger.info(f"Reconciling {kind}: {namespace}/{name}")

    start_time = time.time()

    try:
        await reconcile(kind, namespace, name)

        duration = time.time() - start_time
        reconcile_duration.labels(kind=kind).observe(duration)
        record_reconcile_success(kind, namespace, name)

    except kopf.TemporaryError:
        record_requeue(kind, namespace, name)
        raise
    except kopf.PermanentError:
        record_reconcile_error(kind, namespace, name, "permanent")
        raise
    except Exception as e:
        logger.error(f"Failed to reconcile {kind} {namespace}/{name}: {e}")
        record_reconcile_error(kind, namespace, name, type(e).__name__)
        raise kopf.TemporaryError(
            f"{kind} reconciliation failed: {e}", delay=settings.ERROR_REQUEUE_INTERVAL
        )
