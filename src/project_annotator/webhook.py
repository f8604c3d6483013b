"""
HTTP boundary of the project annotator.

Serves the mutating webhook at ``/mutate/<cluster-name>`` along with liveness
and readiness probes. The cluster name in the path is passed unmodified to
the mutation engine as the cluster to resolve.
"""

import json
import logging
import time
from typing import Optional

from flask import Flask, Response, g, jsonify, request
from werkzeug.exceptions import RequestEntityTooLarge

from .context import ContextError, RequestContext
from .metrics import STATUS_ERROR, MetricsSink
from .mutation import AdmissionRequest, MutationEngine
from .resolver import IdentifierResolver, ResolutionError

# Limit the request body to 1MB
MAX_REQUEST_BODY_SIZE = 1 << 20

ADMISSION_API_VERSION = "admission.k8s.io/v1"

logger = logging.getLogger(__name__)


def _text(body: str, status: int) -> Response:
    return Response(body, status=status, mimetype='text/plain')


def create_app(engine: MutationEngine,
               resolver: IdentifierResolver,
               metrics: Optional[MetricsSink] = None,
               request_timeout: float = 10.0,
               readiness_timeout: float = 5.0) -> Flask:
    """
    Build the webhook Flask application.

    Args:
        engine: Mutation engine deciding admission requests
        resolver: Resolver used by the readiness probe
        metrics: Sink for request metrics
        request_timeout: Deadline in seconds for each admission request
        readiness_timeout: Deadline in seconds for the readiness probe

    Returns:
        Flask: The configured application
    """
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = MAX_REQUEST_BODY_SIZE
    metrics = metrics or MetricsSink()

    @app.route('/mutate/', defaults={'cluster_name': ''}, methods=['POST'], strict_slashes=False)
    @app.route('/mutate/<path:cluster_name>', methods=['POST'])
    def mutate(cluster_name: str):
        start = time.monotonic()

        cluster_name = cluster_name.rstrip('/')
        if not cluster_name:
            logger.error("No cluster name in URL path", extra={'context': {'path': request.path}})
            metrics.record_request('unknown', STATUS_ERROR, time.monotonic() - start)
            return _text("cluster name required in URL path: /mutate/{cluster-name}", 400)

        try:
            review = json.loads(request.get_data())
            admission_request = AdmissionRequest.from_review(review)
        except ValueError as e:
            logger.error(f"Failed to unmarshal admission review: {e}")
            metrics.record_request('unknown', STATUS_ERROR, time.monotonic() - start)
            return _text("failed to unmarshal admission review", 400)

        ctx = RequestContext.with_timeout(request_timeout)
        decision = engine.mutate(cluster_name, admission_request, ctx)

        body = {
            'apiVersion': review.get('apiVersion') or ADMISSION_API_VERSION,
            'kind': review.get('kind') or 'AdmissionReview',
            'response': decision.to_admission_response(admission_request.uid),
        }

        metrics.record_request(admission_request.operation or 'unknown', decision.status.value,
                               time.monotonic() - start)
        return jsonify(body)

    @app.before_request
    def start_timer():
        g.start = time.monotonic()

    @app.errorhandler(RequestEntityTooLarge)
    def request_too_large(e: RequestEntityTooLarge):
        logger.error("Admission review exceeds %d bytes", MAX_REQUEST_BODY_SIZE,
                     extra={'context': {'path': request.path}})
        metrics.record_request('unknown', STATUS_ERROR, time.monotonic() - g.start)
        return _text("request body too large", 413)

    @app.route('/healthz', methods=['GET'])
    def healthz():
        return _text("ok", 200)

    @app.route('/readyz', methods=['GET'])
    def readyz():
        try:
            resolver.health_check(RequestContext.with_timeout(readiness_timeout))
        except (ResolutionError, ContextError) as e:
            logger.error(f"Readiness check failed: {e}")
            return _text(str(e), 503)
        return _text("ok", 200)

    return app
