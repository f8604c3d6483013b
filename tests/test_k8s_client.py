"""
Unit tests for the Kubernetes backend and its error conversion.
"""

import json
from unittest.mock import Mock, patch

import pytest
import urllib3
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

from project_annotator.k8s_client import (
    CLUSTER_RESOURCE,
    PROJECT_RESOURCE,
    K8sAuthenticationError,
    K8sAuthorizationError,
    K8sBadRequestError,
    K8sBaseException,
    K8sNetworkError,
    K8sNotFoundError,
    K8sRateLimitedError,
    K8sServerError,
    K8sServiceUnavailableError,
    K8sTimeoutError,
    KubernetesRancherBackend,
    convert_api_exception,
    is_retryable_error
)


def api_exception(status, reason='Error', message=None):
    exc = ApiException(status=status, reason=reason)
    if message is not None:
        exc.body = json.dumps({'kind': 'Status', 'message': message})
    return exc


class TestConvertApiException:
    """Test mapping of ApiException status codes."""

    @pytest.mark.parametrize('status,expected', [
        (400, K8sBadRequestError),
        (401, K8sAuthenticationError),
        (403, K8sAuthorizationError),
        (404, K8sNotFoundError),
        (408, K8sTimeoutError),
        (429, K8sRateLimitedError),
        (500, K8sServerError),
        (502, K8sServerError),
        (503, K8sServiceUnavailableError),
        (504, K8sTimeoutError),
    ])
    def test_status_mapping(self, status, expected):
        error = convert_api_exception(api_exception(status), 'get cluster')

        assert type(error) is expected
        assert error.status_code == status
        assert error.operation == 'get cluster'

    def test_unknown_status_maps_to_base(self):
        error = convert_api_exception(api_exception(409), 'get cluster')

        assert type(error) is K8sBaseException
        assert "API error (409)" in str(error)

    def test_missing_status_is_network_error(self):
        error = convert_api_exception(api_exception(0, reason='connection refused'), 'get cluster')

        assert isinstance(error, K8sNetworkError)
        assert "connection refused" in str(error)

    def test_body_message_included(self):
        exc = api_exception(404, message='clusters.provisioning.cattle.io "prod" not found')

        error = convert_api_exception(exc, 'get cluster')

        assert 'Details: clusters.provisioning.cattle.io "prod" not found' in str(error)

    def test_non_json_body_ignored(self):
        exc = api_exception(500)
        exc.body = '<html>bad gateway</html>'

        error = convert_api_exception(exc, 'get cluster')

        assert "Details" not in str(error)

    def test_context_recorded(self):
        error = convert_api_exception(api_exception(403, reason='Forbidden'), 'list projects')

        assert error.context['status_code'] == 403
        assert error.context['reason'] == 'Forbidden'


class TestIsRetryableError:
    """Test transient/terminal classification."""

    @pytest.mark.parametrize('status', [408, 429, 500, 502, 503, 504])
    def test_transient_statuses(self, status):
        assert is_retryable_error(convert_api_exception(api_exception(status), 'op'))

    @pytest.mark.parametrize('status', [400, 401, 403, 404])
    def test_terminal_statuses(self, status):
        assert not is_retryable_error(convert_api_exception(api_exception(status), 'op'))

    def test_network_error_is_retryable(self):
        assert is_retryable_error(K8sNetworkError("connection reset"))

    def test_other_exceptions_are_terminal(self):
        assert not is_retryable_error(ValueError("bad"))


class TestKubernetesRancherBackend:
    """Test the CustomObjectsApi-backed implementation."""

    @pytest.fixture
    def custom_objects(self):
        return Mock()

    @pytest.fixture
    def backend(self, custom_objects):
        return KubernetesRancherBackend(custom_objects)

    def test_get_resource(self, backend, custom_objects):
        custom_objects.get_namespaced_custom_object.return_value = {'status': {'clusterName': 'c-m-abc123'}}

        result = backend.get_resource(CLUSTER_RESOURCE, 'fleet-default', 'prod', timeout=2.5)

        assert result == {'status': {'clusterName': 'c-m-abc123'}}
        custom_objects.get_namespaced_custom_object.assert_called_once_with(
            'provisioning.cattle.io', 'v1', 'fleet-default', 'clusters', 'prod',
            _request_timeout=2.5
        )

    def test_list_resources_first_page(self, backend, custom_objects):
        custom_objects.list_namespaced_custom_object.return_value = {'items': []}

        backend.list_resources(PROJECT_RESOURCE, 'c-m-abc123', limit=100, timeout=1.0)

        custom_objects.list_namespaced_custom_object.assert_called_once_with(
            'management.cattle.io', 'v3', 'c-m-abc123', 'projects',
            _request_timeout=1.0, limit=100
        )

    def test_list_resources_with_continue_token(self, backend, custom_objects):
        custom_objects.list_namespaced_custom_object.return_value = {'items': []}

        backend.list_resources(PROJECT_RESOURCE, 'c-m-abc123', limit=100, continue_token='abc')

        kwargs = custom_objects.list_namespaced_custom_object.call_args.kwargs
        assert kwargs['_continue'] == 'abc'
        assert kwargs['limit'] == 100

    def test_list_resources_without_paging(self, backend, custom_objects):
        custom_objects.list_namespaced_custom_object.return_value = {'items': []}

        backend.list_resources(PROJECT_RESOURCE, 'local')

        kwargs = custom_objects.list_namespaced_custom_object.call_args.kwargs
        assert 'limit' not in kwargs
        assert '_continue' not in kwargs

    def test_api_exception_converted(self, backend, custom_objects):
        custom_objects.get_namespaced_custom_object.side_effect = api_exception(404)

        with pytest.raises(K8sNotFoundError) as exc_info:
            backend.get_resource(CLUSTER_RESOURCE, 'fleet-default', 'missing')

        assert "clusters.provisioning.cattle.io fleet-default/missing" in exc_info.value.operation
        assert isinstance(exc_info.value.__cause__, ApiException)

    def test_read_timeout_converted(self, backend, custom_objects):
        custom_objects.get_namespaced_custom_object.side_effect = \
            urllib3.exceptions.ReadTimeoutError(None, '/apis', 'Read timed out.')

        with pytest.raises(K8sTimeoutError):
            backend.get_resource(CLUSTER_RESOURCE, 'fleet-default', 'prod')

    def test_connection_error_converted(self, backend, custom_objects):
        custom_objects.list_namespaced_custom_object.side_effect = \
            urllib3.exceptions.ProtocolError('Connection aborted.')

        with pytest.raises(K8sNetworkError):
            backend.list_resources(PROJECT_RESOURCE, 'c-m-abc123')

    def test_unrelated_errors_propagate(self, backend, custom_objects):
        custom_objects.get_namespaced_custom_object.side_effect = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            backend.get_resource(CLUSTER_RESOURCE, 'fleet-default', 'prod')

    def test_close(self, backend, custom_objects):
        backend.close()

        custom_objects.api_client.close.assert_called_once()


class TestFromConfig:
    """Test backend construction from cluster configuration."""

    @patch('project_annotator.k8s_client.client')
    @patch('project_annotator.k8s_client.config.load_kube_config')
    @patch('project_annotator.k8s_client.config.load_incluster_config')
    def test_prefers_incluster_config(self, mock_incluster, mock_kube, mock_client):
        backend = KubernetesRancherBackend.from_config()

        mock_incluster.assert_called_once()
        mock_kube.assert_not_called()
        assert backend.custom_objects is mock_client.CustomObjectsApi.return_value

    @patch('project_annotator.k8s_client.client')
    @patch('project_annotator.k8s_client.config.load_kube_config')
    @patch('project_annotator.k8s_client.config.load_incluster_config')
    def test_falls_back_to_kubeconfig(self, mock_incluster, mock_kube, mock_client):
        mock_incluster.side_effect = ConfigException("not in cluster")

        KubernetesRancherBackend.from_config()

        mock_kube.assert_called_once()

    @patch('project_annotator.k8s_client.client')
    @patch('project_annotator.k8s_client.config.load_kube_config')
    @patch('project_annotator.k8s_client.config.load_incluster_config')
    def test_disables_client_retries(self, mock_incluster, mock_kube, mock_client):
        configuration = mock_client.Configuration.get_default_copy.return_value

        KubernetesRancherBackend.from_config()

        assert configuration.retries is False
        mock_client.ApiClient.assert_called_once_with(configuration)

    @patch('project_annotator.k8s_client.config.load_kube_config')
    @patch('project_annotator.k8s_client.config.load_incluster_config')
    def test_no_configuration_available(self, mock_incluster, mock_kube):
        mock_incluster.side_effect = ConfigException("not in cluster")
        mock_kube.side_effect = ConfigException("no kubeconfig")

        with pytest.raises(ConfigException):
            KubernetesRancherBackend.from_config()
