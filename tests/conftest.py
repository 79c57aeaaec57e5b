#!/usr/bin/env python3
"""
Shared fixtures: in-memory stand-ins for CustomObjectsApi and CoreV1Api
"""

import base64
import copy
import os
import sys

import kubernetes
import pytest
from unittest.mock import patch
from kubernetes.client.rest import ApiException

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import clients


def merge_patch(target, patch):
    """RFC 7386 JSON merge patch"""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    if not isinstance(target, dict):
        target = {}
    result = dict(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def parse_selector(selector):
    if not selector:
        return {}
    return dict(term.split("=", 1) for term in selector.split(","))


class FakeCustomObjectsApi:
    """Enough of the API server semantics for the operator: versions, finalizers, selectors"""

    def __init__(self):
        self.objects = {}
        self._version = 0
        self._uid = 0

    def _next_version(self):
        self._version += 1
        return str(self._version)

    def _lookup(self, group, plural, namespace, name):
        key = (group, plural, namespace, name)
        if key not in self.objects:
            raise ApiException(status=404, reason="Not Found")
        return key, self.objects[key]

    def _check_version(self, stored, body):
        wanted = body.get("metadata", {}).get("resourceVersion")
        if wanted is not None and wanted != stored["metadata"]["resourceVersion"]:
            raise ApiException(status=409, reason="Conflict")

    def _store(self, key, obj):
        obj["metadata"]["resourceVersion"] = self._next_version()
        # Objects being deleted go away once the last finalizer is dropped
        if obj["metadata"].get("deletionTimestamp") and not obj["metadata"].get("finalizers"):
            self.objects.pop(key, None)
        else:
            self.objects[key] = obj
        return copy.deepcopy(obj)

    # Test helpers

    def add(self, resource, body):
        """Seed an object as if it had been created earlier"""
        obj = copy.deepcopy(body)
        obj.setdefault("apiVersion", f"{resource.group}/{resource.version}")
        obj.setdefault("kind", resource.kind)
        metadata = obj.setdefault("metadata", {})
        self._uid += 1
        metadata.setdefault("uid", f"uid-{self._uid}")
        metadata.setdefault("generation", 1)
        namespace = metadata.get("namespace") if resource.namespaced else None
        return self._store((resource.group, resource.plural, namespace, metadata["name"]), obj)

    def get(self, resource, name, namespace=None):
        key = (resource.group, resource.plural, namespace if resource.namespaced else None, name)
        obj = self.objects.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def items(self, resource, namespace=None):
        return [
            copy.deepcopy(obj)
            for (group, plural, ns, _), obj in sorted(self.objects.items(), key=lambda kv: kv[0][3])
            if group == resource.group and plural == resource.plural and (namespace is None or ns == namespace)
        ]

    # CustomObjectsApi

    def get_namespaced_custom_object(self, group, version, namespace, plural, name, **kwargs):
        _, obj = self._lookup(group, plural, namespace, name)
        return copy.deepcopy(obj)

    def get_cluster_custom_object(self, group, version, plural, name, **kwargs):
        return self.get_namespaced_custom_object(group, version, None, plural, name)

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=None, limit=None, **kwargs):
        wanted = parse_selector(label_selector)
        items = []
        for (g, p, ns, _), obj in sorted(self.objects.items(), key=lambda kv: kv[0][3]):
            if g != group or p != plural or (namespace is not None and ns != namespace):
                continue
            labels = obj["metadata"].get("labels") or {}
            if all(labels.get(k) == v for k, v in wanted.items()):
                items.append(copy.deepcopy(obj))
        if limit:
            items = items[:limit]
        return {"items": items}

    def list_cluster_custom_object(self, group, version, plural, label_selector=None, limit=None, **kwargs):
        return self.list_namespaced_custom_object(group, version, None, plural, label_selector, limit)

    def create_namespaced_custom_object(self, group, version, namespace, plural, body, **kwargs):
        key = (group, plural, namespace, body["metadata"]["name"])
        if key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        obj = copy.deepcopy(body)
        metadata = obj["metadata"]
        self._uid += 1
        metadata["uid"] = f"uid-{self._uid}"
        metadata["generation"] = 1
        if namespace is not None:
            metadata["namespace"] = namespace
        return self._store(key, obj)

    def create_cluster_custom_object(self, group, version, plural, body, **kwargs):
        return self.create_namespaced_custom_object(group, version, None, plural, body)

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body, **kwargs):
        key, stored = self._lookup(group, plural, namespace, name)
        self._check_version(stored, body)
        obj = copy.deepcopy(body)
        obj["status"] = copy.deepcopy(stored.get("status", {}))
        metadata = obj["metadata"]
        for field in ("uid", "generation", "deletionTimestamp"):
            if field in stored["metadata"]:
                metadata[field] = stored["metadata"][field]
        if obj.get("spec") != stored.get("spec"):
            metadata["generation"] = stored["metadata"].get("generation", 1) + 1
        return self._store(key, obj)

    def replace_cluster_custom_object(self, group, version, plural, name, body, **kwargs):
        return self.replace_namespaced_custom_object(group, version, None, plural, name, body)

    def replace_namespaced_custom_object_status(self, group, version, namespace, plural, name, body, **kwargs):
        key, stored = self._lookup(group, plural, namespace, name)
        self._check_version(stored, body)
        obj = copy.deepcopy(stored)
        obj["status"] = copy.deepcopy(body.get("status", {}))
        return self._store(key, obj)

    def replace_cluster_custom_object_status(self, group, version, plural, name, body, **kwargs):
        return self.replace_namespaced_custom_object_status(group, version, None, plural, name, body)

    def patch_namespaced_custom_object(self, group, version, namespace, plural, name, body, **kwargs):
        key, stored = self._lookup(group, plural, namespace, name)
        self._check_version(stored, body)
        obj = merge_patch(stored, body)
        return self._store(key, obj)

    def patch_cluster_custom_object(self, group, version, plural, name, body, **kwargs):
        return self.patch_namespaced_custom_object(group, version, None, plural, name, body)

    def delete_namespaced_custom_object(self, group, version, namespace, plural, name, **kwargs):
        key, stored = self._lookup(group, plural, namespace, name)
        if stored["metadata"].get("finalizers"):
            obj = copy.deepcopy(stored)
            obj["metadata"].setdefault("deletionTimestamp", "2024-01-01T00:00:00Z")
            self._store(key, obj)
        else:
            self.objects.pop(key)
        return {"status": "Success"}

    def delete_cluster_custom_object(self, group, version, plural, name, **kwargs):
        return self.delete_namespaced_custom_object(group, version, None, plural, name)


@pytest.fixture
def store():
    """Install a fresh in-memory store as the operator's API client"""
    previous = clients.custom_objects_api
    fake = FakeCustomObjectsApi()
    clients.custom_objects_api = fake
    yield fake
    clients.custom_objects_api = previous


class FakeCoreV1Api:
    """Secrets and ConfigMaps, keyed by (namespace, name)"""

    def __init__(self):
        self.secrets = {}
        self.config_maps = {}

    def add_secret(self, name, namespace, data):
        """Seed a Secret from plain string values"""
        self.secrets[(namespace, name)] = kubernetes.client.V1Secret(
            metadata=kubernetes.client.V1ObjectMeta(name=name, namespace=namespace),
            data={key: base64.b64encode(value.encode("utf-8")).decode("utf-8") for key, value in data.items()},
        )

    def secret_data(self, name, namespace):
        secret = self.secrets.get((namespace, name))
        if secret is None:
            return None
        return {key: base64.b64decode(value).decode("utf-8") for key, value in secret.data.items()}

    def read_namespaced_secret(self, name, namespace, **kwargs):
        if (namespace, name) not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        return self.secrets[(namespace, name)]

    def create_namespaced_secret(self, namespace, body, **kwargs):
        key = (namespace, body.metadata.name)
        if key in self.secrets:
            raise ApiException(status=409, reason="AlreadyExists")
        self.secrets[key] = body
        return body

    def replace_namespaced_secret(self, name, namespace, body, **kwargs):
        if (namespace, name) not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        self.secrets[(namespace, name)] = body
        return body

    def create_namespaced_config_map(self, namespace, body, **kwargs):
        key = (namespace, body.metadata.name)
        if key in self.config_maps:
            raise ApiException(status=409, reason="AlreadyExists")
        self.config_maps[key] = body
        return body

    def replace_namespaced_config_map(self, name, namespace, body, **kwargs):
        if (namespace, name) not in self.config_maps:
            raise ApiException(status=404, reason="Not Found")
        self.config_maps[(namespace, name)] = body
        return body


@pytest.fixture
def core():
    """Install a fresh in-memory CoreV1Api for the management cluster"""
    previous = clients.core_v1
    fake = FakeCoreV1Api()
    clients.core_v1 = fake
    yield fake
    clients.core_v1 = previous


@pytest.fixture
def remote_core():
    """The CoreV1Api every provisioned cluster's kubeconfig resolves to"""
    fake = FakeCoreV1Api()
    with patch("clients.remote_core_api", return_value=fake) as factory:
        fake.factory = factory
        yield fake
