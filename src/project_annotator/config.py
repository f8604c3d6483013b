"""
Process configuration for the project annotator.

Values come from command-line flags or environment variables and are fixed
for the lifetime of the process once loaded.
"""

from dataclasses import dataclass
from typing import Optional

from .mutation import MutationConfig
from .resolver import ResolverConfig

LOG_LEVELS = ('debug', 'info', 'warn', 'warning', 'error')
LOG_FORMATS = ('json', 'text')


class ConfigurationError(ValueError):
    """Raised when configuration values are invalid"""
    pass


@dataclass(frozen=True)
class WebhookConfig:
    """Configuration for the webhook process"""
    port: int = 8443
    metrics_port: int = 9090
    log_level: str = 'info'
    log_format: str = 'json'

    strict_mode: bool = False
    dry_run: bool = False
    cache_ttl_minutes: int = 5

    project_label: str = 'project'
    project_annotation: str = 'field.cattle.io/projectId'

    tls_cert_file: Optional[str] = None
    tls_key_file: Optional[str] = None

    request_timeout: float = 10.0  # seconds, per admission request
    readiness_timeout: float = 5.0  # seconds

    @property
    def cache_ttl(self) -> float:
        """Cache TTL in seconds"""
        return self.cache_ttl_minutes * 60.0

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert_file and self.tls_key_file)

    def validate(self) -> 'WebhookConfig':
        """
        Check the configuration for invalid values.

        Returns:
            WebhookConfig: self, for chaining

        Raises:
            ConfigurationError: If a value is out of range or inconsistent
        """
        for name, port in (('port', self.port), ('metrics_port', self.metrics_port)):
            if not 0 < port < 65536:
                raise ConfigurationError(f"{name} must be between 1 and 65535, got {port}")
        if self.port == self.metrics_port:
            raise ConfigurationError("port and metrics_port must differ")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ConfigurationError(f"unknown log level: {self.log_level}")
        if self.log_format.lower() not in LOG_FORMATS:
            raise ConfigurationError(f"unknown log format: {self.log_format}")
        if self.cache_ttl_minutes <= 0:
            raise ConfigurationError(f"cache TTL must be positive, got {self.cache_ttl_minutes}")
        if self.request_timeout <= 0 or self.readiness_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")
        if not self.project_label or not self.project_annotation:
            raise ConfigurationError("project label and annotation keys must not be empty")
        if bool(self.tls_cert_file) != bool(self.tls_key_file):
            raise ConfigurationError("tls_cert_file and tls_key_file must be set together")
        return self

    def to_mutation_config(self) -> MutationConfig:
        return MutationConfig(
            strict_mode=self.strict_mode,
            dry_run=self.dry_run,
            project_label=self.project_label,
            project_annotation=self.project_annotation,
        )

    def to_resolver_config(self) -> ResolverConfig:
        return ResolverConfig(cache_ttl=self.cache_ttl)
