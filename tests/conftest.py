"""
Pytest configuration and fixtures for project annotator tests.
"""

import pytest
import os
import sys
from typing import Any, Dict, List, Optional

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from prometheus_client import CollectorRegistry

from project_annotator.k8s_client import K8sNotFoundError, RancherBackend, ResourceRef
from project_annotator.metrics import PrometheusMetrics
from project_annotator.resolver import IdentifierResolver, ResolverConfig
from project_annotator.retry import RetryPolicy


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend(RancherBackend):
    """
    In-memory RancherBackend.

    ``get_errors`` and ``list_errors`` are queues of exceptions raised, one
    per call, before the stored data is served.
    """

    def __init__(self, clusters: Optional[Dict[str, Dict[str, Any]]] = None,
                 projects: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.clusters = clusters or {}
        self.projects = projects or {}
        self.get_errors: List[Exception] = []
        self.list_errors: List[Exception] = []
        self.get_calls: List[tuple] = []
        self.list_calls: List[tuple] = []

    def get_resource(self, resource: ResourceRef, namespace: str, name: str,
                     timeout: Optional[float] = None) -> Dict[str, Any]:
        self.get_calls.append((resource, namespace, name))
        if self.get_errors:
            raise self.get_errors.pop(0)
        if name not in self.clusters:
            raise K8sNotFoundError(f'{resource} "{name}" not found', 404)
        return self.clusters[name]

    def list_resources(self, resource: ResourceRef, namespace: str,
                       limit: Optional[int] = None, continue_token: Optional[str] = None,
                       timeout: Optional[float] = None) -> Dict[str, Any]:
        self.list_calls.append((resource, namespace, limit, continue_token))
        if self.list_errors:
            raise self.list_errors.pop(0)

        items = self.projects.get(namespace, [])
        start = int(continue_token or 0)
        end = start + limit if limit else len(items)
        return {
            'items': items[start:end],
            'metadata': {'continue': str(end) if end < len(items) else ''},
        }


def cluster_object(cluster_id: Optional[str]) -> Dict[str, Any]:
    """A provisioning.cattle.io cluster whose status carries ``cluster_id``."""
    status = {'clusterName': cluster_id} if cluster_id is not None else {}
    return {'apiVersion': 'provisioning.cattle.io/v1', 'kind': 'Cluster', 'status': status}


def project_object(project_id: str, display_name: str) -> Dict[str, Any]:
    return {
        'apiVersion': 'management.cattle.io/v3',
        'kind': 'Project',
        'metadata': {'name': project_id},
        'spec': {'displayName': display_name},
    }


def namespace_object(name: str = 'team-a',
                     labels: Optional[Dict[str, str]] = None,
                     annotations: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {'name': name}
    if labels is not None:
        metadata['labels'] = labels
    if annotations is not None:
        metadata['annotations'] = annotations
    return {'apiVersion': 'v1', 'kind': 'Namespace', 'metadata': metadata}


def admission_review(obj: Any, operation: str = 'CREATE', old_obj: Any = None,
                     kind: str = 'Namespace', uid: str = 'req-123') -> Dict[str, Any]:
    request = {
        'uid': uid,
        'kind': {'group': '', 'version': 'v1', 'kind': kind},
        'operation': operation,
        'object': obj,
    }
    if old_obj is not None:
        request['oldObject'] = old_obj
    return {'apiVersion': 'admission.k8s.io/v1', 'kind': 'AdmissionReview', 'request': request}


def sample_value(metrics: PrometheusMetrics, name: str, labels: Dict[str, str]) -> float:
    """Current value of a metric sample, 0 when it was never recorded."""
    value = metrics.registry.get_sample_value(f'project_annotator_{name}', labels)
    return value or 0.0


@pytest.fixture
def metrics():
    """PrometheusMetrics with an isolated registry."""
    return PrometheusMetrics(registry=CollectorRegistry())


@pytest.fixture
def fast_retry():
    """Retry policy with millisecond backoff."""
    return RetryPolicy(max_retries=3, initial_delay=0.001, max_delay=0.004)


@pytest.fixture
def resolver_config(fast_retry):
    return ResolverConfig(cache_ttl=300.0, retry=fast_retry, enable_background_eviction=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    """Backend with cluster 'prod' (c-m-abc123) and its projects."""
    return FakeBackend(
        clusters={
            'prod': cluster_object('c-m-abc123'),
            'staging': cluster_object('c-m-def456'),
        },
        projects={
            'c-m-abc123': [
                project_object('p-default', 'Default'),
                project_object('p-xyz789', 'platform'),
            ],
            'c-m-def456': [
                project_object('p-stg001', 'platform'),
            ],
        },
    )


@pytest.fixture
def resolver(backend, metrics, resolver_config, clock):
    resolver = IdentifierResolver(backend, metrics, resolver_config, clock=clock)
    yield resolver
    resolver.close()
