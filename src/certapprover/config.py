"""
Controller configuration.

Configuration is a YAML file validated into frozen Pydantic models. Every
field has a default, so an empty file (or no file at all) yields a config
that works in-cluster against an OPA sidecar on localhost.

Example:
    kube:
      api_url: https://127.0.0.1:6443
      verify_tls: false
    opa:
      base_url: http://localhost:8181
    controller:
      workers: 4
    log_level: DEBUG
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field

SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")


class KubeConfig(BaseModel):
    """
    Connection settings for the Kubernetes API.

    Attributes:
        api_url: API server URL. None means in-cluster discovery from the
            KUBERNETES_SERVICE_HOST / KUBERNETES_SERVICE_PORT environment
        token_path: File holding the bearer token
        ca_path: CA bundle used to verify the API server
        verify_tls: Whether to verify the server certificate
        timeout_seconds: Per-request timeout (watches use no read timeout)
        max_conflict_retries: Read-modify-write attempts for a status patch
        watch_timeout_seconds: Server-side timeout of one watch request
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    api_url: str | None = Field(default=None)
    token_path: Path | None = Field(default=SERVICE_ACCOUNT_DIR / "token")
    ca_path: Path | None = Field(default=SERVICE_ACCOUNT_DIR / "ca.crt")
    verify_tls: bool = Field(default=True)
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_conflict_retries: int = Field(default=5, ge=1, le=50)
    watch_timeout_seconds: int = Field(default=300, gt=0)


class OpaConfig(BaseModel):
    """Connection settings for the Open Policy Agent server."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    base_url: str = Field(default="http://localhost:8181")
    timeout_seconds: float = Field(default=10.0, gt=0)


class WorkerConfig(BaseModel):
    """
    Worker pool and retry settings.

    Failed reconciliations are retried after
    ``backoff_base_seconds * 2**failures``, capped at
    ``backoff_max_seconds``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    workers: int = Field(default=2, ge=1, le=64)
    backoff_base_seconds: float = Field(default=0.005, gt=0)
    backoff_max_seconds: float = Field(default=1000.0, gt=0)


class ControllerConfig(BaseModel):
    """Complete controller configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kube: KubeConfig = Field(default_factory=KubeConfig)
    opa: OpaConfig = Field(default_factory=OpaConfig)
    controller: WorkerConfig = Field(default_factory=WorkerConfig)
    log_level: str = Field(default="INFO")


def load_config(path: Path | str | None) -> ControllerConfig:
    """
    Load controller configuration from a YAML file.

    Args:
        path: Path to the YAML file, or None for defaults

    Returns:
        Validated ControllerConfig

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValidationError: If the YAML doesn't match the schema
    """
    if path is None:
        return ControllerConfig()

    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return ControllerConfig.model_validate(data or {})
