"""Configuration management for meshcheck."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple

ENVIRONMENTS = ("development", "staging", "production")

DEFAULT_CRITICAL_CONTAINERS = (
    "postgresql",
    "content-api",
    "content-api-sidecar",
    "inquiries-api",
    "inquiries-api-sidecar",
    "notification-api",
    "notification-api-sidecar",
    "services-api",
    "services-api-sidecar",
    "public-gateway",
    "public-gateway-sidecar",
    "admin-gateway",
    "admin-gateway-sidecar",
)


@dataclass(frozen=True)
class ServiceDescriptor:
    """A backend service reachable both directly and through the mesh."""

    name: str
    direct_url: str
    mesh_app_id: str
    critical: bool = True


def _parse_bool(env_var: str, default: str) -> bool:
    value = os.environ.get(env_var, default)
    if value.lower() in ("true", "1", "yes", "on"):
        return True
    if value.lower() in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"Invalid boolean value for {env_var}: {value}")


def _parse_int(env_var: str, default: str) -> int:
    value = os.environ.get(env_var, default)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid integer value for {env_var}: {value}")


def _parse_list(env_var: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.environ.get(env_var)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


class Config:
    """Immutable run configuration read from the environment."""

    def __init__(self):
        self._defaults = {
            "environment": os.environ.get("MESHCHECK_ENVIRONMENT", "development"),

            # Container runtime
            "container_runtime": os.environ.get("CONTAINER_RUNTIME", "podman"),
            "runtime_timeout": _parse_int("RUNTIME_TIMEOUT", "10"),
            "critical_containers": _parse_list(
                "CRITICAL_CONTAINERS", DEFAULT_CRITICAL_CONTAINERS
            ),

            # Gateways and direct service addresses
            "public_gateway_url": os.environ.get(
                "PUBLIC_GATEWAY_URL", "http://localhost:9001"
            ),
            "admin_gateway_url": os.environ.get(
                "ADMIN_GATEWAY_URL", "http://localhost:9000"
            ),
            "content_url": os.environ.get("CONTENT_URL", "http://localhost:3001"),
            "inquiries_url": os.environ.get("INQUIRIES_URL", "http://localhost:3101"),
            "notifications_url": os.environ.get(
                "NOTIFICATIONS_URL", "http://localhost:3201"
            ),

            # Mesh sidecar
            "mesh_host": os.environ.get("MESH_HOST", "localhost"),
            "mesh_http_port": _parse_int("MESH_HTTP_PORT", "3500"),
            "mesh_app_id": os.environ.get("MESH_APP_ID", "meshcheck"),
            "content_app_id": os.environ.get("CONTENT_APP_ID", "content"),
            "inquiries_app_id": os.environ.get("INQUIRIES_APP_ID", "inquiries"),
            "notifications_app_id": os.environ.get("NOTIFICATIONS_APP_ID", "notifications"),

            # Probing
            "probe_timeout": _parse_int("PROBE_TIMEOUT", "5"),
            "strict_pending": _parse_bool("STRICT_PENDING", "false"),

            # Contracts
            "openapi_dir": os.environ.get("MESHCHECK_OPENAPI_DIR", "contracts/openapi"),

            # Infrastructure stack
            "pulumi_work_dir": os.environ.get("PULUMI_WORK_DIR", "infrastructure"),
            "pulumi_stack_template": os.environ.get(
                "PULUMI_STACK_TEMPLATE", "{environment}"
            ),
            "pulumi_timeout": _parse_int("PULUMI_TIMEOUT", "300"),

            # Logging and audit
            "log_level": os.environ.get("LOG_LEVEL", "INFO"),
            "log_dir": os.environ.get("LOG_DIR", ""),
            "audit_enabled": _parse_bool("AUDIT_ENABLED", "false"),
            "audit_log_path": os.environ.get(
                "AUDIT_LOG_PATH", "logs/probe-audit.jsonl"
            ),
        }

    def __getattr__(self, name: str) -> Any:
        """Get configuration value."""
        if name in self._defaults:
            return self._defaults[name]
        raise AttributeError(f"'{self.__class__.__name__}' object has no attribute '{name}'")

    def __setattr__(self, name: str, value: Any) -> None:
        """Prevent modification of configuration after initialization."""
        # _defaults is absent while __init__ is still running
        defaults = self.__dict__.get("_defaults")
        if defaults is not None and name in defaults:
            raise AttributeError(f"Configuration is immutable: cannot set '{name}'")
        super().__setattr__(name, value)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value with optional default."""
        return self._defaults.get(key, default)

    def services(self) -> List[ServiceDescriptor]:
        """Backend services probed directly and through their sidecars."""
        return [
            ServiceDescriptor("content", self.content_url, self.content_app_id),
            ServiceDescriptor("inquiries", self.inquiries_url, self.inquiries_app_id),
            ServiceDescriptor("notifications", self.notifications_url, self.notifications_app_id),
        ]

    def service(self, name: str) -> ServiceDescriptor:
        for descriptor in self.services():
            if descriptor.name == name or descriptor.mesh_app_id == name:
                return descriptor
        raise KeyError(f"Unknown service: {name}")

    def gateways(self) -> Dict[str, str]:
        return {
            "public-gateway": self.public_gateway_url,
            "admin-gateway": self.admin_gateway_url,
        }

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty list means valid.
        """
        errors = []

        if self.environment not in ENVIRONMENTS:
            errors.append(
                f"MESHCHECK_ENVIRONMENT must be one of {', '.join(ENVIRONMENTS)}: "
                f"{self.environment}"
            )

        if not self.critical_containers:
            errors.append("CRITICAL_CONTAINERS must name at least one container")

        for key in ("runtime_timeout", "probe_timeout", "pulumi_timeout"):
            if self._defaults[key] <= 0:
                errors.append(f"{key.upper()} must be positive")

        if not 0 < self.mesh_http_port < 65536:
            errors.append(f"MESH_HTTP_PORT out of range: {self.mesh_http_port}")

        if "{environment}" not in self.pulumi_stack_template:
            errors.append("PULUMI_STACK_TEMPLATE must contain '{environment}'")

        if self.audit_enabled:
            audit_dir = Path(self.audit_log_path).parent
            if audit_dir.exists() and not os.access(audit_dir, os.W_OK):
                errors.append(f"Audit log directory not writable: {audit_dir}")

        return errors

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return self._defaults.copy()

    def __repr__(self) -> str:
        return f"Config(environment={self.environment}, runtime={self.container_runtime})"

    def get_startup_summary(self) -> Dict[str, Any]:
        """Get configuration summary for logging.

        Returns:
            Dictionary with key configuration values for startup logging
        """
        return {
            "environment": self.environment,
            "container_runtime": self.container_runtime,
            "critical_containers": len(self.critical_containers),
            "public_gateway_url": self.public_gateway_url,
            "admin_gateway_url": self.admin_gateway_url,
            "mesh": f"{self.mesh_host}:{self.mesh_http_port}",
            "probe_timeout": self.probe_timeout,
            "openapi_dir": self.openapi_dir,
            "audit_log_path": self.audit_log_path if self.audit_enabled else "disabled",
            "log_level": self.log_level,
        }

    @classmethod
    def load_runtime_config(cls) -> "Config":
        """Load the configuration for this run from the environment."""
        return cls()
