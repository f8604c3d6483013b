"""
Identifier resolver for the project annotator.

This module translates the human-facing names used on namespaces into the
identifiers held by the Rancher management API: a cluster name into a
management cluster ID (e.g. ``c-m-abc123``) and a project display name into
a project ID (e.g. ``p-xyz789``). Lookups go through read-through TTL caches
and a bounded retry policy so that the admission path stays fast while the
management API is slow or flaky.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from .cache import TTLCache
from .context import ContextError, RequestContext
from .k8s_client import (
    CLUSTER_RESOURCE,
    PROJECT_RESOURCE,
    K8sNotFoundError,
    RancherBackend,
    ResourceRef,
)
from .metrics import (
    CACHE_TYPE_CLUSTER,
    CACHE_TYPE_PROJECT,
    ERROR_TYPE_API,
    ERROR_TYPE_NOT_FOUND,
    MetricsSink,
)
from .retry import RetryPolicy, execute_with_retry


class ResolutionError(Exception):
    """Base class for failed identifier lookups"""
    error_type = ERROR_TYPE_API


class IdentifierNotFoundError(ResolutionError):
    """The requested cluster or project does not exist"""
    error_type = ERROR_TYPE_NOT_FOUND


class BackendLookupError(ResolutionError):
    """The management API could not be queried"""
    error_type = ERROR_TYPE_API


@dataclass
class ResolverConfig:
    """Configuration for IdentifierResolver"""
    cache_ttl: float = 300.0  # 5 minutes default
    cluster_namespace: str = "fleet-default"
    # The local cluster namespace always exists in Rancher
    health_check_project_namespace: str = "local"
    project_page_size: int = 100
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    # Background eviction runs every cache_ttl seconds unless overridden
    enable_background_eviction: bool = True
    eviction_interval: Optional[float] = None


ProjectKey = Tuple[str, str]


def _nested(obj: Any, *path: str) -> Any:
    """Walk nested dictionaries, returning None as soon as a step is missing."""
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


class IdentifierResolver:
    """
    Resolves cluster and project identifiers with caching and retries.

    Two independent caches are kept: cluster name to cluster ID, and
    (cluster ID, project display name) to project ID. Concurrent misses for
    the same key may both query the API; the results are equivalent and the
    last write wins.

    The resolver owns a background thread that sweeps expired cache entries.
    Call close() (or use the resolver as a context manager) to stop it.
    """

    def __init__(self,
                 backend: RancherBackend,
                 metrics: Optional[MetricsSink] = None,
                 config: Optional[ResolverConfig] = None,
                 cluster_cache: Optional[TTLCache[str]] = None,
                 project_cache: Optional[TTLCache[ProjectKey]] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the IdentifierResolver.

        Args:
            backend: Management API access
            metrics: Sink for cache and lookup metrics
            config: Configuration object for the resolver
            cluster_cache: Cache for cluster IDs (built from config when None)
            project_cache: Cache for project IDs (built from config when None)
            clock: Time source for the default caches
        """
        self.backend = backend
        self.metrics = metrics or MetricsSink()
        self.config = config or ResolverConfig()
        self.logger = logging.getLogger(__name__)

        self._cluster_cache = cluster_cache if cluster_cache is not None else TTLCache(self.config.cache_ttl, clock)
        self._project_cache = project_cache if project_cache is not None else TTLCache(self.config.cache_ttl, clock)

        self._stop_eviction = threading.Event()
        self._eviction_thread: Optional[threading.Thread] = None

        if self.config.enable_background_eviction:
            self.start_eviction()

        self.logger.info("IdentifierResolver initialized with cache TTL %.0fs", self.config.cache_ttl)

    def resolve_cluster(self, cluster_name: str, ctx: Optional[RequestContext] = None) -> str:
        """
        Return the management cluster ID for a cluster name.

        Args:
            cluster_name: Cluster display name, as routed to the webhook
            ctx: Request context bounding remote calls and retry waits

        Returns:
            str: Cluster ID (e.g. ``c-m-abc123``)

        Raises:
            IdentifierNotFoundError: If the cluster or its ID does not exist
            BackendLookupError: If the management API failed
            ContextError: If the request context finished
        """
        ctx = ctx or RequestContext.background()

        if not cluster_name:
            self.metrics.record_lookup_error(CACHE_TYPE_CLUSTER, ERROR_TYPE_NOT_FOUND)
            raise IdentifierNotFoundError("cluster name must not be empty")

        cached = self._cluster_cache.get(cluster_name)
        if cached is not None:
            self.logger.debug("Cluster ID cache hit for '%s': %s", cluster_name, cached)
            self.metrics.record_cache_hit(CACHE_TYPE_CLUSTER)
            return cached

        self.metrics.record_cache_miss(CACHE_TYPE_CLUSTER)

        namespace = self.config.cluster_namespace
        try:
            cluster = execute_with_retry(
                lambda timeout: self.backend.get_resource(CLUSTER_RESOURCE, namespace, cluster_name, timeout=timeout),
                ctx,
                self.config.retry,
                operation=f"get cluster {cluster_name}",
            )
        except K8sNotFoundError as e:
            self.metrics.record_lookup_error(CACHE_TYPE_CLUSTER, ERROR_TYPE_NOT_FOUND)
            raise IdentifierNotFoundError(f"cluster {cluster_name} not found in {namespace}: {e}") from e
        except ContextError:
            raise
        except Exception as e:
            self.metrics.record_lookup_error(CACHE_TYPE_CLUSTER, ERROR_TYPE_API)
            raise BackendLookupError(f"failed to get cluster {cluster_name}: {e}") from e

        cluster_id = _nested(cluster, 'status', 'clusterName')
        if not isinstance(cluster_id, str) or not cluster_id:
            self.metrics.record_lookup_error(CACHE_TYPE_CLUSTER, ERROR_TYPE_NOT_FOUND)
            raise IdentifierNotFoundError(f"clusterName not found in cluster {cluster_name} status")

        self._cluster_cache.set(cluster_name, cluster_id)
        self.logger.debug(
            "Cluster ID cached for '%s': %s", cluster_name, cluster_id,
            extra={'context': {'cluster': cluster_name, 'cluster_id': cluster_id,
                               'ttl': self._cluster_cache.ttl}}
        )
        return cluster_id

    def resolve_project(self, cluster_id: str, display_name: str,
                        ctx: Optional[RequestContext] = None) -> str:
        """
        Return the project ID for a project display name within a cluster.

        Projects are listed page by page in the order the API returns them
        and the first one whose display name matches wins.

        Args:
            cluster_id: Management cluster ID, which is also the project namespace
            display_name: Project display name
            ctx: Request context bounding remote calls and retry waits

        Returns:
            str: Project ID (e.g. ``p-xyz789``)

        Raises:
            IdentifierNotFoundError: If no project carries the display name
            BackendLookupError: If the management API failed
            ContextError: If the request context finished
        """
        ctx = ctx or RequestContext.background()

        if not cluster_id or not display_name:
            self.metrics.record_lookup_error(CACHE_TYPE_PROJECT, ERROR_TYPE_NOT_FOUND)
            raise IdentifierNotFoundError("cluster ID and project display name must not be empty")

        cache_key = (cluster_id, display_name)
        cached = self._project_cache.get(cache_key)
        if cached is not None:
            self.logger.debug("Project ID cache hit for '%s' in %s: %s", display_name, cluster_id, cached)
            self.metrics.record_cache_hit(CACHE_TYPE_PROJECT)
            return cached

        self.metrics.record_cache_miss(CACHE_TYPE_PROJECT)

        continue_token: Optional[str] = None
        while True:
            try:
                page = execute_with_retry(
                    lambda timeout, token=continue_token: self.backend.list_resources(
                        PROJECT_RESOURCE, cluster_id,
                        limit=self.config.project_page_size,
                        continue_token=token,
                        timeout=timeout,
                    ),
                    ctx,
                    self.config.retry,
                    operation=f"list projects in {cluster_id}",
                )
            except K8sNotFoundError as e:
                self.metrics.record_lookup_error(CACHE_TYPE_PROJECT, ERROR_TYPE_NOT_FOUND)
                raise IdentifierNotFoundError(f"project {display_name} not found in cluster {cluster_id}: {e}") from e
            except ContextError:
                raise
            except Exception as e:
                self.metrics.record_lookup_error(CACHE_TYPE_PROJECT, ERROR_TYPE_API)
                raise BackendLookupError(f"failed to list projects in cluster {cluster_id}: {e}") from e

            project_id = self._find_project(page, display_name)
            if project_id is not None:
                self._project_cache.set(cache_key, project_id)
                self.logger.debug(
                    "Project ID cached for '%s' in %s: %s", display_name, cluster_id, project_id,
                    extra={'context': {'cluster_id': cluster_id, 'project': display_name,
                                       'project_id': project_id, 'ttl': self._project_cache.ttl}}
                )
                return project_id

            continue_token = _nested(page, 'metadata', 'continue')
            if not continue_token:
                break

        self.metrics.record_lookup_error(CACHE_TYPE_PROJECT, ERROR_TYPE_NOT_FOUND)
        raise IdentifierNotFoundError(f"project {display_name} not found in cluster {cluster_id}")

    @staticmethod
    def _find_project(page: Dict[str, Any], display_name: str) -> Optional[str]:
        """Return the name of the first project in the page with the given display name."""
        for project in (page or {}).get('items') or []:
            if _nested(project, 'spec', 'displayName') != display_name:
                continue
            project_id = _nested(project, 'metadata', 'name')
            if isinstance(project_id, str) and project_id:
                return project_id
        return None

    def health_check(self, ctx: Optional[RequestContext] = None) -> None:
        """
        Verify connectivity and read access to both backing collections.

        The caches are not consulted.

        Raises:
            BackendLookupError: If a collection cannot be listed
            ContextError: If the request context finished
        """
        ctx = ctx or RequestContext.background()

        checks = (
            (CLUSTER_RESOURCE, self.config.cluster_namespace),
            (PROJECT_RESOURCE, self.config.health_check_project_namespace),
        )
        for resource, namespace in checks:
            self._health_check_resource(resource, namespace, ctx)

    def _health_check_resource(self, resource: ResourceRef, namespace: str, ctx: RequestContext) -> None:
        try:
            execute_with_retry(
                lambda timeout: self.backend.list_resources(resource, namespace, limit=1, timeout=timeout),
                ctx,
                self.config.retry,
                operation=f"health check {resource}",
            )
        except ContextError:
            raise
        except Exception as e:
            raise BackendLookupError(f"failed to access {resource}: {e}") from e

    def clear_cache(self) -> None:
        """Empty both caches."""
        self._cluster_cache.clear()
        self._project_cache.clear()
        self.logger.info("Cache cleared")

    def cache_stats(self) -> Dict[str, int]:
        """
        Get current cache sizes.

        Returns:
            Dict[str, int]: Entry count per cache type
        """
        return {
            CACHE_TYPE_CLUSTER: len(self._cluster_cache),
            CACHE_TYPE_PROJECT: len(self._project_cache),
        }

    def evict_expired(self) -> int:
        """Remove expired entries from both caches and return how many were dropped."""
        evicted = self._cluster_cache.evict_expired() + self._project_cache.evict_expired()
        if evicted:
            self.logger.debug("Evicted %d expired cache entries", evicted)
        return evicted

    def start_eviction(self) -> None:
        """Start the background eviction thread if it is not running."""
        if self._eviction_thread is not None and self._eviction_thread.is_alive():
            return

        self._stop_eviction.clear()
        self._eviction_thread = threading.Thread(
            target=self._eviction_loop,
            name="resolver-cache-eviction",
            daemon=True,
        )
        self._eviction_thread.start()

    def stop_eviction(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the background eviction thread and wait for it to exit."""
        self._stop_eviction.set()
        thread = self._eviction_thread
        if thread is not None:
            thread.join(timeout)
            self._eviction_thread = None

    @property
    def eviction_running(self) -> bool:
        return self._eviction_thread is not None and self._eviction_thread.is_alive()

    def _eviction_loop(self) -> None:
        interval = self.config.eviction_interval or self.config.cache_ttl
        while not self._stop_eviction.wait(interval):
            try:
                self.evict_expired()
            except Exception as e:
                self.logger.error("Cache eviction failed: %s", e)

    def close(self) -> None:
        self.stop_eviction()
        self.logger.debug("IdentifierResolver closed")

    def __enter__(self):
        """Context manager entry"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit with cleanup"""
        self.close()
