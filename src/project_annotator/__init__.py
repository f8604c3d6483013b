"""
Rancher project annotator.

Mutating admission webhook that resolves a namespace's project label into
Rancher cluster and project identifiers and stamps them onto the namespace
as an annotation.
"""

from .context import (
    ContextError,
    ContextCancelledError,
    ContextDeadlineExceededError,
    RequestContext
)

from .k8s_client import (
    K8sBaseException,
    RancherBackend,
    KubernetesRancherBackend,
    ResourceRef,
    CLUSTER_RESOURCE,
    PROJECT_RESOURCE,
    is_retryable_error
)

from .metrics import (
    MetricsSink,
    PrometheusMetrics
)

from .resolver import (
    IdentifierResolver,
    ResolverConfig,
    ResolutionError,
    IdentifierNotFoundError,
    BackendLookupError
)

from .mutation import (
    AdmissionRequest,
    NamespaceSnapshot,
    DecisionStatus,
    MutationDecision,
    MutationConfig,
    MutationEngine
)

from .patch import (
    build_annotation_patch,
    escape_json_pointer,
    unescape_json_pointer
)

__all__ = [
    # Context
    'ContextError',
    'ContextCancelledError',
    'ContextDeadlineExceededError',
    'RequestContext',
    # Backend
    'K8sBaseException',
    'RancherBackend',
    'KubernetesRancherBackend',
    'ResourceRef',
    'CLUSTER_RESOURCE',
    'PROJECT_RESOURCE',
    'is_retryable_error',
    # Metrics
    'MetricsSink',
    'PrometheusMetrics',
    # Resolver
    'IdentifierResolver',
    'ResolverConfig',
    'ResolutionError',
    'IdentifierNotFoundError',
    'BackendLookupError',
    # Mutation
    'AdmissionRequest',
    'NamespaceSnapshot',
    'DecisionStatus',
    'MutationDecision',
    'MutationConfig',
    'MutationEngine',
    # Patch
    'build_annotation_patch',
    'escape_json_pointer',
    'unescape_json_pointer'
]
