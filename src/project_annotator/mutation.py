"""
Mutation engine for namespace admission requests.

The engine takes one admission request, looks up the Rancher cluster and
project identifiers for the namespace's project label, and decides whether
to allow, deny or patch the namespace. Each request is decided in a single
pass; decisions are immutable and never shared between requests.
"""

import base64
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .context import ContextError, RequestContext
from .metrics import (
    STATUS_ALLOWED,
    STATUS_DENIED,
    STATUS_DRY_RUN,
    STATUS_ERROR,
    STATUS_MUTATED,
    STATUS_SKIPPED,
)
from .patch import build_annotation_patch
from .resolver import IdentifierResolver, ResolutionError

OPERATION_CREATE = "CREATE"
OPERATION_UPDATE = "UPDATE"

PATCH_TYPE_JSON_PATCH = "JSONPatch"


class MalformedRequestError(ValueError):
    """The AdmissionReview body does not carry a usable request"""
    pass


class MalformedObjectError(ValueError):
    """The object payload of an admission request cannot be parsed as a namespace"""
    pass


class DecisionStatus(Enum):
    """Observability label attached to every decision"""
    ALLOWED = STATUS_ALLOWED
    DENIED = STATUS_DENIED
    ERROR = STATUS_ERROR
    SKIPPED = STATUS_SKIPPED
    MUTATED = STATUS_MUTATED
    DRY_RUN = STATUS_DRY_RUN


@dataclass(frozen=True)
class AdmissionRequest:
    """The parts of an AdmissionReview request the engine needs"""
    uid: str
    kind: str
    operation: str
    object: Any
    old_object: Any = None

    @classmethod
    def from_review(cls, review: Any) -> 'AdmissionRequest':
        """
        Extract the request from a decoded AdmissionReview.

        Args:
            review: Decoded AdmissionReview body

        Returns:
            AdmissionRequest: The admission request

        Raises:
            MalformedRequestError: If the review has no request object
        """
        if not isinstance(review, dict):
            raise MalformedRequestError("admission review must be a JSON object")

        request = review.get('request')
        if not isinstance(request, dict):
            raise MalformedRequestError("admission review has no request")

        kind = request.get('kind') or {}
        if isinstance(kind, dict):
            kind = kind.get('kind', '')
        if not isinstance(kind, str):
            raise MalformedRequestError("admission request kind must be a string")

        return cls(
            uid=str(request.get('uid') or ''),
            kind=kind,
            operation=str(request.get('operation') or ''),
            object=request.get('object'),
            old_object=request.get('oldObject'),
        )


def _string_map(value: Any, field_name: str) -> Dict[str, str]:
    if not isinstance(value, dict):
        raise MalformedObjectError(f"metadata.{field_name} must be an object")
    for key, item in value.items():
        if not isinstance(item, str):
            raise MalformedObjectError(f"metadata.{field_name}[{key!r}] must be a string")
    return dict(value)


@dataclass(frozen=True)
class NamespaceSnapshot:
    """Parsed view of a namespace object. ``annotations`` is None when the object has no annotation map."""
    name: str
    labels: Dict[str, str]
    annotations: Optional[Dict[str, str]]

    @classmethod
    def parse(cls, raw: Any) -> 'NamespaceSnapshot':
        """
        Parse a namespace from a decoded object or raw JSON.

        Args:
            raw: Object payload as a dict, or JSON text/bytes

        Returns:
            NamespaceSnapshot: Parsed namespace

        Raises:
            MalformedObjectError: If the payload is not a valid namespace object
        """
        if isinstance(raw, (bytes, bytearray, str)):
            try:
                raw = json.loads(raw)
            except ValueError as e:
                raise MalformedObjectError(f"invalid JSON: {e}") from e

        if not isinstance(raw, dict):
            raise MalformedObjectError("object must be a JSON object")

        metadata = raw.get('metadata')
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            raise MalformedObjectError("metadata must be an object")

        name = metadata.get('name') or ''
        if not isinstance(name, str):
            raise MalformedObjectError("metadata.name must be a string")

        labels = metadata.get('labels')
        annotations = metadata.get('annotations')

        return cls(
            name=name,
            labels=_string_map(labels, 'labels') if labels is not None else {},
            annotations=_string_map(annotations, 'annotations') if annotations is not None else None,
        )

    def annotation(self, key: str) -> str:
        return (self.annotations or {}).get(key, '')


@dataclass(frozen=True)
class MutationDecision:
    """
    Outcome of one admission request.

    ``patch`` holds the serialized JSON Patch document and is only set for
    mutated decisions.
    """
    allowed: bool
    status: DecisionStatus
    message: Optional[str] = None
    patch: Optional[bytes] = None

    @classmethod
    def allow(cls, status: DecisionStatus = DecisionStatus.ALLOWED) -> 'MutationDecision':
        return cls(allowed=True, status=status)

    @classmethod
    def skip(cls) -> 'MutationDecision':
        return cls(allowed=True, status=DecisionStatus.SKIPPED)

    @classmethod
    def deny(cls, message: str) -> 'MutationDecision':
        return cls(allowed=False, status=DecisionStatus.DENIED, message=message)

    @classmethod
    def error(cls, message: str) -> 'MutationDecision':
        return cls(allowed=False, status=DecisionStatus.ERROR, message=message)

    @classmethod
    def mutate(cls, patch: bytes) -> 'MutationDecision':
        return cls(allowed=True, status=DecisionStatus.MUTATED, patch=patch)

    @property
    def patch_operations(self) -> Optional[List[Dict[str, Any]]]:
        """The patch document decoded back into operations."""
        if self.patch is None:
            return None
        return json.loads(self.patch)

    def to_admission_response(self, uid: str) -> Dict[str, Any]:
        """
        Render the decision as an AdmissionReview v1 response object.

        Args:
            uid: UID of the admission request being answered

        Returns:
            Dict[str, Any]: The ``response`` field of an AdmissionReview
        """
        response: Dict[str, Any] = {'uid': uid, 'allowed': self.allowed}
        if self.message:
            response['status'] = {'message': self.message}
        if self.patch is not None:
            response['patch'] = base64.b64encode(self.patch).decode('ascii')
            response['patchType'] = PATCH_TYPE_JSON_PATCH
        return response


@dataclass
class MutationConfig:
    """Configuration for MutationEngine"""
    strict_mode: bool = False
    dry_run: bool = False
    project_label: str = "project"
    project_annotation: str = "field.cattle.io/projectId"
    target_kind: str = "Namespace"


class MutationEngine:
    """
    Decides allow/deny/patch for namespace admission requests.

    In strict mode a failed cluster or project lookup denies the request;
    otherwise the namespace is admitted without the project annotation.
    """

    def __init__(self, resolver: IdentifierResolver, config: Optional[MutationConfig] = None):
        """
        Initialize the MutationEngine.

        Args:
            resolver: Resolver for cluster and project identifiers
            config: Configuration object for the engine
        """
        self.resolver = resolver
        self.config = config or MutationConfig()
        self.logger = logging.getLogger(__name__)

    def mutate(self, cluster_name: str, request: AdmissionRequest,
               ctx: Optional[RequestContext] = None) -> MutationDecision:
        """
        Decide one admission request.

        Args:
            cluster_name: Cluster routing key taken from the webhook path
            request: The admission request
            ctx: Request context bounding resolver calls

        Returns:
            MutationDecision: The admission decision
        """
        ctx = ctx or RequestContext.background()
        log_context = {
            'request_id': request.uid,
            'cluster': cluster_name,
            'operation': request.operation,
        }

        if request.kind != self.config.target_kind:
            return MutationDecision.skip()

        try:
            namespace = NamespaceSnapshot.parse(request.object)
        except MalformedObjectError as e:
            self.logger.error(f"Failed to unmarshal namespace: {e}", extra={'context': log_context})
            return MutationDecision.error(f"failed to unmarshal namespace: {e}")

        log_context['namespace'] = namespace.name

        project_name = namespace.labels.get(self.config.project_label)
        if project_name is None:
            self.logger.debug("Namespace has no project label, skipping", extra={'context': log_context})
            return MutationDecision.skip()

        log_context['project'] = project_name

        if request.operation == OPERATION_UPDATE and self._is_unchanged_update(request, namespace, project_name):
            self.logger.debug("Project label unchanged and annotation exists, skipping",
                              extra={'context': log_context})
            return MutationDecision.skip()

        try:
            cluster_id = self.resolver.resolve_cluster(cluster_name, ctx)
        except (ResolutionError, ContextError) as e:
            self.logger.error(f"Failed to get cluster ID: {e}", extra={'context': log_context})
            return self._lookup_failed(f"failed to get cluster ID: {e}", 'cluster_not_found', log_context)

        log_context['cluster_id'] = cluster_id

        try:
            project_id = self.resolver.resolve_project(cluster_id, project_name, ctx)
        except (ResolutionError, ContextError) as e:
            self.logger.error(f"Failed to get project ID: {e}", extra={'context': log_context})
            return self._lookup_failed(f"failed to get project ID for '{project_name}': {e}",
                                       'project_not_found', log_context)

        annotation_value = f"{cluster_id}:{project_id}"
        log_context.update({'project_id': project_id, 'annotation': annotation_value})

        if namespace.annotations is not None and \
                namespace.annotations.get(self.config.project_annotation) == annotation_value:
            self.logger.debug("Annotation already has correct value, skipping", extra={'context': log_context})
            return MutationDecision.skip()

        if self.config.dry_run:
            self.logger.info("[DRY-RUN] Would add project annotation to namespace", extra={'context': log_context})
            return MutationDecision.allow(DecisionStatus.DRY_RUN)

        patch = build_annotation_patch(namespace.annotations, self.config.project_annotation, annotation_value)
        try:
            patch_bytes = json.dumps(patch, separators=(',', ':')).encode('utf-8')
        except (TypeError, ValueError) as e:
            self.logger.error(f"Failed to marshal patch: {e}", extra={'context': log_context})
            return MutationDecision.error(f"failed to marshal patch: {e}")

        self.logger.info("Adding project annotation to namespace", extra={'context': log_context})
        return MutationDecision.mutate(patch_bytes)

    def _is_unchanged_update(self, request: AdmissionRequest, namespace: NamespaceSnapshot,
                             project_name: str) -> bool:
        """
        True when an UPDATE keeps the project label and the annotation is already set.

        An unparseable old object cannot prove anything, so it counts as changed.
        """
        if request.old_object is None:
            return False

        try:
            old_namespace = NamespaceSnapshot.parse(request.old_object)
        except MalformedObjectError as e:
            self.logger.debug(f"Could not parse old object, processing update: {e}")
            return False

        old_project_name = old_namespace.labels.get(self.config.project_label, '')
        return old_project_name == project_name and namespace.annotation(self.config.project_annotation) != ''

    def _lookup_failed(self, message: str, reason: str, log_context: Mapping[str, Any]) -> MutationDecision:
        """Deny in strict mode, otherwise admit without annotation."""
        if self.config.strict_mode:
            return MutationDecision.deny(message)

        self.logger.warning("Allowing namespace without project annotation (strict mode disabled)",
                            extra={'context': dict(log_context, reason=reason)})
        return MutationDecision.allow(DecisionStatus.ALLOWED)
