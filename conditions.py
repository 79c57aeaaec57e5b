#!/usr/bin/env python3
"""
Status conditions ledger

Conditions are plain dicts kept in a list under status.conditions, shaped
like metav1.Condition: type, status, reason, message, lastTransitionTime and
observedGeneration.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

# Condition types
TEMPLATE_READY = "TemplateReady"
HELM_CHART_READY = "HelmChartReady"
CREDENTIAL_READY = "CredentialReady"
HELM_RELEASE_READY = "HelmReleaseReady"
CREDENTIALS_APPLIED = "CredentialsApplied"
# Ready of the provisioned CAPI Cluster, kept apart from our own Ready
CLUSTER_READY = "ClusterReady"
READY = "Ready"

# Condition statuses
TRUE = "True"
FALSE = "False"
UNKNOWN = "Unknown"

# Reasons
SUCCEEDED_REASON = "Succeeded"
FAILED_REASON = "Failed"
PROGRESSING_REASON = "Progressing"


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def find_condition(conditions: List[Dict], ctype: str) -> Optional[Dict]:
    for condition in conditions:
        if condition.get("type") == ctype:
            return condition
    return None


def set_condition(
    conditions: List[Dict],
    ctype: str,
    status: str,
    reason: str,
    message: str,
    generation: Optional[int] = None,
) -> bool:
    """
    Upsert a condition by type

    lastTransitionTime only moves when the status changes, so repeating the
    same observation leaves the ledger untouched. Returns True if anything
    was modified.
    """
    existing = find_condition(conditions, ctype)
    if existing is None:
        condition = {
            "type": ctype,
            "status": status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": _now(),
        }
        if generation is not None:
            condition["observedGeneration"] = generation
        conditions.append(condition)
        return True

    changed = False
    if existing.get("status") != status:
        existing["status"] = status
        existing["lastTransitionTime"] = _now()
        changed = True
    for key, value in (("reason", reason), ("message", message)):
        if existing.get(key) != value:
            existing[key] = value
            changed = True
    if generation is not None and existing.get("observedGeneration") != generation:
        existing["observedGeneration"] = generation
        changed = True
    return changed


def is_ready(conditions: List[Dict], ctype: str) -> bool:
    condition = find_condition(conditions, ctype)
    return condition is not None and condition.get("status") == TRUE


def summarize(
    conditions: List[Dict], ready_message: str, generation: Optional[int] = None
) -> Dict:
    """Fold every condition except Ready into the Ready condition"""
    warnings = ""
    errors = ""
    for condition in conditions:
        if condition.get("type") == READY:
            continue
        if condition.get("status") == UNKNOWN:
            warnings += f"{condition.get('message', '')}. "
        elif condition.get("status") == FALSE:
            errors += f"{condition.get('message', '')}. "

    status, reason, message = TRUE, SUCCEEDED_REASON, ready_message
    if errors:
        status, reason, message = FALSE, FAILED_REASON, errors.strip()
    elif warnings:
        status, reason, message = UNKNOWN, PROGRESSING_REASON, warnings.strip()

    set_condition(conditions, READY, status, reason, message, generation)
    return find_condition(conditions, READY)


def init_conditions(conditions: List[Dict], dry_run: bool = False):
    """Seed the ledger of a freshly observed ManagedCluster"""
    set_condition(conditions, TEMPLATE_READY, UNKNOWN, PROGRESSING_REASON, "Template is not yet ready")
    set_condition(conditions, HELM_CHART_READY, UNKNOWN, PROGRESSING_REASON, "HelmChart is not yet ready")
    if not dry_run:
        set_condition(conditions, HELM_RELEASE_READY, UNKNOWN, PROGRESSING_REASON, "HelmRelease is not yet ready")
    set_condition(conditions, READY, UNKNOWN, PROGRESSING_REASON, "ManagedCluster is not yet ready")
