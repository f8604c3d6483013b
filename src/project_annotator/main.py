"""
Command-line entry point: wires the resolver, mutation engine and HTTP
servers together and runs them until a shutdown signal arrives.
"""

import logging
import signal
import threading
from typing import Optional

import typer
from kubernetes import config as k8s_config
from prometheus_client import start_http_server
from werkzeug.serving import make_server

from .config import ConfigurationError, WebhookConfig
from .k8s_client import KubernetesRancherBackend
from .logging_setup import setup_logging
from .metrics import PrometheusMetrics
from .mutation import MutationEngine
from .resolver import IdentifierResolver
from .webhook import create_app

app = typer.Typer(help="Mutating admission webhook that stamps Rancher project annotations on namespaces.")

logger = logging.getLogger(__name__)


@app.callback()
def main() -> None:
    """Rancher project annotator."""


def _build_config(**values) -> WebhookConfig:
    try:
        return WebhookConfig(**values).validate()
    except ConfigurationError as e:
        typer.echo(f"Invalid configuration: {e}", err=True)
        raise typer.Exit(code=2)


@app.command()
def serve(
    port: int = typer.Option(WebhookConfig.port, "--port", envvar="PORT", help="Webhook server port."),
    metrics_port: int = typer.Option(WebhookConfig.metrics_port, "--metrics-port", envvar="METRICS_PORT",
                                     help="Metrics server port."),
    log_level: str = typer.Option(WebhookConfig.log_level, "--log-level", envvar="LOG_LEVEL",
                                  help="Log level (debug, info, warn, error)."),
    log_format: str = typer.Option(WebhookConfig.log_format, "--log-format", envvar="LOG_FORMAT",
                                   help="Log format (json, text)."),
    strict_mode: bool = typer.Option(WebhookConfig.strict_mode, "--strict-mode/--no-strict-mode",
                                     envvar="STRICT_MODE",
                                     help="Reject namespaces whose cluster or project cannot be resolved."),
    dry_run: bool = typer.Option(WebhookConfig.dry_run, "--dry-run/--no-dry-run", envvar="DRY_RUN",
                                 help="Log what would happen without patching namespaces."),
    cache_ttl_minutes: int = typer.Option(WebhookConfig.cache_ttl_minutes, "--cache-ttl", envvar="CACHE_TTL_MINUTES",
                                          help="Cache TTL in minutes for cluster/project lookups."),
    project_label: str = typer.Option(WebhookConfig.project_label, "--project-label", envvar="PROJECT_LABEL",
                                      help="Namespace label holding the project display name."),
    project_annotation: str = typer.Option(WebhookConfig.project_annotation, "--project-annotation",
                                           envvar="PROJECT_ANNOTATION",
                                           help="Annotation receiving '<cluster-id>:<project-id>'."),
    tls_cert_file: Optional[str] = typer.Option(None, "--tls-cert-file", envvar="TLS_CERT_FILE",
                                                help="TLS certificate for the webhook server."),
    tls_key_file: Optional[str] = typer.Option(None, "--tls-key-file", envvar="TLS_KEY_FILE",
                                               help="TLS private key for the webhook server."),
    request_timeout: float = typer.Option(WebhookConfig.request_timeout, "--request-timeout",
                                          envvar="REQUEST_TIMEOUT_SECONDS",
                                          help="Deadline in seconds for each admission request."),
) -> None:
    """Run the webhook and metrics servers."""
    webhook_config = _build_config(
        port=port,
        metrics_port=metrics_port,
        log_level=log_level,
        log_format=log_format,
        strict_mode=strict_mode,
        dry_run=dry_run,
        cache_ttl_minutes=cache_ttl_minutes,
        project_label=project_label,
        project_annotation=project_annotation,
        tls_cert_file=tls_cert_file,
        tls_key_file=tls_key_file,
        request_timeout=request_timeout,
    )

    setup_logging(webhook_config.log_level, webhook_config.log_format)
    logger.info("Starting project annotator", extra={'context': {
        'log_level': webhook_config.log_level,
        'strict_mode': webhook_config.strict_mode,
        'dry_run': webhook_config.dry_run,
        'cache_ttl': webhook_config.cache_ttl,
        'metrics_port': webhook_config.metrics_port,
    }})

    try:
        backend = KubernetesRancherBackend.from_config()
    except k8s_config.ConfigException as e:
        logger.error(f"Failed to load Kubernetes configuration: {e}")
        raise typer.Exit(code=1)

    metrics = PrometheusMetrics.default()
    resolver = IdentifierResolver(backend, metrics, webhook_config.to_resolver_config())
    engine = MutationEngine(resolver, webhook_config.to_mutation_config())
    flask_app = create_app(engine, resolver, metrics,
                           request_timeout=webhook_config.request_timeout,
                           readiness_timeout=webhook_config.readiness_timeout)

    metrics_server, _ = start_http_server(webhook_config.metrics_port, registry=metrics.registry)
    logger.info("Metrics server started", extra={'context': {
        'port': webhook_config.metrics_port, 'endpoint': '/metrics'}})

    ssl_context = None
    if webhook_config.tls_enabled:
        ssl_context = (webhook_config.tls_cert_file, webhook_config.tls_key_file)

    server = make_server('0.0.0.0', webhook_config.port, flask_app, threaded=True, ssl_context=ssl_context)
    server_thread = threading.Thread(target=server.serve_forever, name="webhook-server", daemon=True)
    server_thread.start()
    logger.info("Webhook server started", extra={'context': {
        'port': webhook_config.port, 'endpoint': '/mutate/{cluster-name}', 'tls': webhook_config.tls_enabled}})

    stop = threading.Event()

    def handle_shutdown(signum, _frame):
        logger.info("Received shutdown signal", extra={'context': {'signal': signal.Signals(signum).name}})
        stop.set()

    def handle_cache_reset(_signum, _frame):
        resolver.clear_cache()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGHUP, handle_cache_reset)

    while not stop.wait(1.0):
        if not server_thread.is_alive():
            logger.error("Webhook server exited unexpectedly")
            break

    server.shutdown()
    metrics_server.shutdown()
    resolver.close()
    backend.close()
    logger.info("Server stopped")


if __name__ == "__main__":
    app()
