"""
Kubernetes API access module for the project annotator.

This module defines the error taxonomy used for calls against the Rancher
management API, the abstract backend capability consumed by the identifier
resolver, and its production implementation on top of the official
Kubernetes Python client.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException


# Custom Exception Classes for different Kubernetes error types
class K8sBaseException(Exception):
    """Base exception for all Kubernetes client errors"""
    def __init__(self, message: str, status_code: Optional[int] = None,
                 operation: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.operation = operation
        self.context = context or {}
        self.timestamp = time.time()


class K8sAuthenticationError(K8sBaseException):
    """Authentication failed (401)"""
    pass


class K8sAuthorizationError(K8sBaseException):
    """Authorization failed (403)"""
    pass


class K8sNotFoundError(K8sBaseException):
    """Resource not found (404)"""
    pass


class K8sBadRequestError(K8sBaseException):
    """Malformed request (400)"""
    pass


class K8sRateLimitedError(K8sBaseException):
    """Too many requests (429)"""
    pass


class K8sServiceUnavailableError(K8sBaseException):
    """Service unavailable (503)"""
    pass


class K8sServerError(K8sBaseException):
    """Internal server error (500 and other 5xx)"""
    pass


class K8sTimeoutError(K8sBaseException):
    """Request timeout error"""
    pass


class K8sNetworkError(K8sBaseException):
    """Network/connection error"""
    pass


RETRYABLE_EXCEPTIONS = (
    K8sTimeoutError,
    K8sRateLimitedError,
    K8sServiceUnavailableError,
    K8sServerError,
    K8sNetworkError,
)


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an error is transient and worth retrying.

    Timeouts, rate limiting, unavailability, internal server errors and
    connection failures are retryable. Not-found, bad-request, forbidden and unauthorized errors, as
    well as anything that is not a Kubernetes error, are terminal.

    Args:
        exception: The exception to check

    Returns:
        bool: True if the error is retryable
    """
    return isinstance(exception, RETRYABLE_EXCEPTIONS)


def _format_api_error(api_exception: ApiException, operation: str) -> str:
    """Format an ApiException into a readable message."""
    status_code = api_exception.status

    error_messages = {
        400: f"Bad request while trying to {operation}.",
        401: "Authentication failed. Please check the service account token.",
        403: f"Access denied. Missing permission to {operation}.",
        404: f"Resource not found while trying to {operation}.",
        429: f"Rate limited by the Kubernetes API while trying to {operation}.",
        500: f"Kubernetes API server error while trying to {operation}.",
        503: f"Kubernetes API server unavailable while trying to {operation}.",
        504: f"Kubernetes API server timed out while trying to {operation}."
    }

    base_message = error_messages.get(status_code, f"API error ({status_code}) while trying to {operation}")

    try:
        if api_exception.body:
            error_body = json.loads(api_exception.body)
            if isinstance(error_body, dict) and 'message' in error_body:
                base_message += f" Details: {error_body['message']}"
    except (TypeError, ValueError):
        pass

    return base_message


def convert_api_exception(api_exception: ApiException, operation: str) -> K8sBaseException:
    """
    Convert ApiException to the matching custom exception.

    Args:
        api_exception: The Kubernetes API exception
        operation: Description of the operation that failed

    Returns:
        K8sBaseException: Appropriate custom exception
    """
    status_code = api_exception.status
    context = {
        'operation': operation,
        'status_code': status_code,
        'reason': getattr(api_exception, 'reason', None),
    }

    if not status_code:
        return K8sNetworkError(f"Failed to reach Kubernetes API while trying to {operation}: "
                               f"{api_exception.reason}", None, operation, context)

    error_message = _format_api_error(api_exception, operation)

    if status_code == 400:
        return K8sBadRequestError(error_message, status_code, operation, context)
    elif status_code == 401:
        return K8sAuthenticationError(error_message, status_code, operation, context)
    elif status_code == 403:
        return K8sAuthorizationError(error_message, status_code, operation, context)
    elif status_code == 404:
        return K8sNotFoundError(error_message, status_code, operation, context)
    elif status_code in (408, 504):
        return K8sTimeoutError(error_message, status_code, operation, context)
    elif status_code == 429:
        return K8sRateLimitedError(error_message, status_code, operation, context)
    elif status_code == 503:
        return K8sServiceUnavailableError(error_message, status_code, operation, context)
    elif status_code >= 500:
        return K8sServerError(error_message, status_code, operation, context)
    else:
        return K8sBaseException(error_message, status_code, operation, context)


@dataclass(frozen=True)
class ResourceRef:
    """Group/version/plural coordinates of a custom resource collection"""
    group: str
    version: str
    plural: str

    def __str__(self) -> str:
        return f"{self.plural}.{self.group}"


CLUSTER_RESOURCE = ResourceRef(group='provisioning.cattle.io', version='v1', plural='clusters')
PROJECT_RESOURCE = ResourceRef(group='management.cattle.io', version='v3', plural='projects')


class RancherBackend(ABC):
    """
    Read-only access to the Rancher management API.

    Implementations raise K8sBaseException subclasses on failure so callers
    can classify errors as retryable or terminal.
    """

    @abstractmethod
    def get_resource(self, resource: ResourceRef, namespace: str, name: str,
                     timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Get a single resource by name.

        Args:
            resource: Resource collection to read from
            namespace: Namespace of the resource
            name: Resource name
            timeout: Per-call timeout in seconds

        Returns:
            Dict[str, Any]: The resource as a plain dictionary
        """

    @abstractmethod
    def list_resources(self, resource: ResourceRef, namespace: str,
                       limit: Optional[int] = None, continue_token: Optional[str] = None,
                       timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        List resources in a namespace, one page at a time.

        Args:
            resource: Resource collection to list
            namespace: Namespace to list in
            limit: Maximum number of items in the page
            continue_token: Token returned by the previous page
            timeout: Per-call timeout in seconds

        Returns:
            Dict[str, Any]: List object with ``items`` and ``metadata.continue``
        """


@dataclass
class K8sClientConfig:
    """Configuration for the Kubernetes backend"""
    api_server_url: Optional[str] = None
    verify_ssl: bool = True
    connection_pool_maxsize: int = 10


class KubernetesRancherBackend(RancherBackend):
    """
    RancherBackend implementation using the Kubernetes CustomObjectsApi.

    Retries are handled by the caller, so the underlying urllib3 retries
    are disabled.
    """

    def __init__(self, custom_objects: client.CustomObjectsApi):
        self.custom_objects = custom_objects
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config_obj: Optional[K8sClientConfig] = None) -> 'KubernetesRancherBackend':
        """
        Build a backend from in-cluster configuration, falling back to kubeconfig.

        Args:
            config_obj: Configuration object for the client

        Returns:
            KubernetesRancherBackend: Configured backend

        Raises:
            config.ConfigException: If neither configuration source is available
        """
        config_obj = config_obj or K8sClientConfig()
        logger = logging.getLogger(__name__)

        try:
            config.load_incluster_config()
            logger.info("Successfully loaded in-cluster configuration")
        except config.ConfigException as incluster_error:
            logger.debug(f"In-cluster config not available: {incluster_error}")
            config.load_kube_config()
            logger.info("Successfully loaded kubeconfig")

        configuration = client.Configuration.get_default_copy()
        if config_obj.api_server_url:
            configuration.host = config_obj.api_server_url
        if not config_obj.verify_ssl:
            configuration.verify_ssl = False
        configuration.connection_pool_maxsize = config_obj.connection_pool_maxsize
        configuration.retries = False

        api_client = client.ApiClient(configuration)
        return cls(client.CustomObjectsApi(api_client))

    def get_resource(self, resource: ResourceRef, namespace: str, name: str,
                     timeout: Optional[float] = None) -> Dict[str, Any]:
        operation = f"get {resource} {namespace}/{name}"
        try:
            return self.custom_objects.get_namespaced_custom_object(
                resource.group, resource.version, namespace, resource.plural, name,
                _request_timeout=timeout
            )
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise self._convert_error(e, operation) from e

    def list_resources(self, resource: ResourceRef, namespace: str,
                       limit: Optional[int] = None, continue_token: Optional[str] = None,
                       timeout: Optional[float] = None) -> Dict[str, Any]:
        operation = f"list {resource} in {namespace}"
        kwargs: Dict[str, Any] = {'_request_timeout': timeout}
        if limit:
            kwargs['limit'] = limit
        if continue_token:
            kwargs['_continue'] = continue_token

        try:
            return self.custom_objects.list_namespaced_custom_object(
                resource.group, resource.version, namespace, resource.plural, **kwargs
            )
        except (ApiException, urllib3.exceptions.HTTPError) as e:
            raise self._convert_error(e, operation) from e

    def _convert_error(self, error: Exception, operation: str) -> K8sBaseException:
        """Map client and transport errors onto the K8s error taxonomy."""
        if isinstance(error, ApiException):
            return convert_api_exception(error, operation)
        if isinstance(error, urllib3.exceptions.TimeoutError):
            return K8sTimeoutError(f"Timed out while trying to {operation}: {error}",
                                   operation=operation)
        return K8sNetworkError(f"Network error while trying to {operation}: {error}",
                               operation=operation)

    def close(self) -> None:
        self.custom_objects.api_client.close()
