#!/usr/bin/env python3
"""
Unit tests for Management handlers
"""

import dataclasses

import kopf
import pytest
from unittest.mock import patch
import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import clients
from config import settings
from management_handlers import (
    DEFAULT_CORE,
    DEFAULT_PROVIDERS,
    ComponentsError,
    apply_defaults,
    components_in_order,
    ensure_management,
    merge_providers,
    reconcile,
    reconcile_management,
)

SYSTEM_NAMESPACE = "hmc-system"


def seed_provider_template(store, name, valid=True, providers=None, config=None):
    status = {
        "valid": valid,
        "chartRef": {"kind": "HelmChart", "name": name, "namespace": SYSTEM_NAMESPACE},
        "providers": providers or [],
    }
    if config is not None:
        status["config"] = config
    store.add(clients.PROVIDER_TEMPLATES, {
        "metadata": {"name": name, "namespace": SYSTEM_NAMESPACE},
        "spec": {"helm": {"chartName": name}},
        "status": status,
    })


def seed_management(store, providers):
    store.add(clients.MANAGEMENTS, {
        "metadata": {"name": "hmc"},
        "spec": {"core": DEFAULT_CORE, "providers": providers},
    })


class TestDefaults:
    """Tests for defaulting and ordering"""

    def test_apply_defaults(self):
        spec = {}

        assert apply_defaults(spec)
        assert spec["core"] == DEFAULT_CORE
        assert spec["providers"] == DEFAULT_PROVIDERS

    def test_defaults_keep_explicit_providers(self):
        spec = {"providers": []}

        assert apply_defaults(spec)
        assert spec["providers"] == []

    def test_configured_spec_untouched(self):
        spec = {"core": {"hmc": {"template": "hmc-custom"}}}

        assert not apply_defaults(spec)
        assert "providers" not in spec

    def test_components_in_order(self):
        components = components_in_order({
            "core": {"hmc": {"template": "hmc"}},
            "providers": [{"name": "projectsveltos"}, {"name": "k0smotron", "template": "k0smotron-0-1"}],
        })

        assert [c.name for c in components] == ["hmc", "capi", "projectsveltos", "k0smotron"]
        assert components[1].template == "cluster-api"
        assert components[1].depends_on == ["hmc"]
        assert components[2].depends_on == ["capi"]
        assert components[2].target_namespace == "projectsveltos"
        assert components[3].template == "k0smotron-0-1"

    def test_merge_providers(self):
        merged = merge_providers(
            [{"name": "infrastructure-aws", "versionOrConstraint": "2.6.0"}],
            [
                {"name": "bootstrap-k0s", "versionOrConstraint": "0.1.0"},
                {"name": "infrastructure-aws", "versionOrConstraint": "2.6.1"},
            ],
        )

        assert merged == [
            {"name": "bootstrap-k0s", "versionOrConstraint": "0.1.0"},
            {"name": "infrastructure-aws", "versionOrConstraint": "2.6.1"},
        ]


class TestReconcile:
    """Tests for the component rollout"""

    @pytest.mark.asyncio
    async def test_defaults_written_first(self, store):
        store.add(clients.MANAGEMENTS, {"metadata": {"name": "hmc"}, "spec": {}})

        await reconcile("hmc")

        management = store.get(clients.MANAGEMENTS, "hmc")
        assert management["spec"]["core"] == DEFAULT_CORE
        assert store.items(clients.HELM_RELEASES) == []

    @pytest.mark.asyncio
    async def test_all_components_installed(self, store):
        seed_management(store, [{"name": "cluster-api-provider-aws"}, {"name": "projectsveltos"}])
        seed_provider_template(store, "hmc", config={"replicas": 1})
        seed_provider_template(store, "cluster-api", providers=[{"name": "cluster-api", "versionOrConstraint": "1.7.0"}])
        seed_provider_template(store, "cluster-api-provider-aws", providers=[
            {"name": "infrastructure-aws", "versionOrConstraint": "2.6.1"},
        ])
        seed_provider_template(store, "projectsveltos")

        await reconcile("hmc")

        status = store.get(clients.MANAGEMENTS, "hmc")["status"]
        assert all(component["success"] for component in status["components"].values())
        assert status["availableProviders"] == [
            {"name": "cluster-api", "versionOrConstraint": "1.7.0"},
            {"name": "infrastructure-aws", "versionOrConstraint": "2.6.1"},
        ]

        hmc = store.get(clients.HELM_RELEASES, "hmc", SYSTEM_NAMESPACE)
        assert hmc["spec"]["values"] == {"replicas": 1}
        assert "dependsOn" not in hmc["spec"]
        assert hmc["metadata"]["ownerReferences"][0]["kind"] == "Management"

        capi = store.get(clients.HELM_RELEASES, "capi", SYSTEM_NAMESPACE)
        assert capi["spec"]["dependsOn"] == [{"name": "hmc", "namespace": SYSTEM_NAMESPACE}]

        sveltos = store.get(clients.HELM_RELEASES, "projectsveltos", SYSTEM_NAMESPACE)
        assert sveltos["spec"]["targetNamespace"] == "projectsveltos"
        assert sveltos["spec"]["install"]["createNamespace"] is True

    @pytest.mark.asyncio
    async def test_broken_component_does_not_block_the_rest(self, store):
        seed_management(store, [{"name": "cluster-api-provider-aws"}])
        seed_provider_template(store, "hmc")
        seed_provider_template(store, "cluster-api", valid=False)
        seed_provider_template(store, "cluster-api-provider-aws", providers=[
            {"name": "infrastructure-aws", "versionOrConstraint": "2.6.1"},
        ])

        with pytest.raises(ComponentsError) as exc_info:
            await reconcile("hmc")

        assert len(exc_info.value.errors) == 1
        assert "cluster-api" in str(exc_info.value)
        assert "hmc-system/cluster-api is not marked as valid" in str(exc_info.value)

        status = store.get(clients.MANAGEMENTS, "hmc")["status"]
        assert status["components"]["hmc"] == {"success": True, "error": ""}
        assert status["components"]["capi"]["success"] is False
        assert status["components"]["cluster-api-provider-aws"]["success"] is True
        assert status["availableProviders"] == [{"name": "infrastructure-aws", "versionOrConstraint": "2.6.1"}]

        assert store.get(clients.HELM_RELEASES, "capi", SYSTEM_NAMESPACE) is None
        assert store.get(clients.HELM_RELEASES, "cluster-api-provider-aws", SYSTEM_NAMESPACE) is not None

    @pytest.mark.asyncio
    async def test_missing_template_is_retried(self, store):
        seed_management(store, [])
        seed_provider_template(store, "hmc")

        with pytest.raises(kopf.TemporaryError, match="Failed to get ProviderTemplate hmc-system/cluster-api"):
            await reconcile_management("hmc")

    @pytest.mark.asyncio
    async def test_missing_management_is_ignored(self, store):
        await reconcile_management("hmc")


class TestEnsureManagement:
    """Tests for creating the Management singleton"""

    @pytest.mark.asyncio
    async def test_created_with_defaults(self, store):
        await ensure_management()

        management = store.get(clients.MANAGEMENTS, "hmc")
        assert management["spec"]["core"] == DEFAULT_CORE
        assert management["spec"]["providers"] == DEFAULT_PROVIDERS

    @pytest.mark.asyncio
    async def test_existing_left_alone(self, store):
        store.add(clients.MANAGEMENTS, {"metadata": {"name": "hmc"}, "spec": {"providers": []}})

        await ensure_management()

        assert store.get(clients.MANAGEMENTS, "hmc")["spec"] == {"providers": []}

    @pytest.mark.asyncio
    async def test_disabled(self, store):
        with patch("management_handlers.settings", dataclasses.replace(settings, CREATE_MANAGEMENT=False)):
            await ensure_management()

        assert store.get(clients.MANAGEMENTS, "hmc") is None
