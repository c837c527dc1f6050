"""Process-wide configuration — env-driven, read once at startup.

Centralized settings using pydantic-settings.  Reads from a .env file and
PIPEWRIGHT_* environment variables.  Credentials are ``SecretStr`` so they
never show up in reprs, dumps or logs; they reach a stage only through the
Secret Scope.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipewrightSettings(BaseSettings):
    """Runtime settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export PIPEWRIGHT_REGISTRY=ghcr.io/acme
        export PIPEWRIGHT_IMAGE_NAME=snake-game
        export PIPEWRIGHT_SCM_WRITE_TOKEN=ghp_...
        export PIPEWRIGHT_MAX_PARALLELISM=2

    Or via .env file::

        PIPEWRIGHT_ANALYSIS_TOKEN=...
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PIPEWRIGHT_",
        env_file_encoding="utf-8",
        frozen=True,
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Image coordinates
    registry: str = "ghcr.io"
    image_name: str = "app"

    # Scheduling
    max_parallelism: int = 4
    max_transport_retries: int = 2
    transport_retry_delay_seconds: float = 1.0
    halt_on_failure: bool = False

    # Quality gate polling
    quality_gate_timeout_seconds: float = 300.0
    quality_gate_poll_seconds: float = 5.0

    # GitOps
    manifest_path: str = "k8s/deployment.yaml"
    gitops_branch: str = "main"
    repo_path: Path = Path(".")

    # Definition file
    definition_path: Path = Path("pipewright.toml")

    # Credentials — exposed to stages only through SecretScope
    analysis_token: SecretStr = SecretStr("")
    scm_write_token: SecretStr = SecretStr("")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def image_repository(self) -> str:
        return f"{self.registry}/{self.image_name}" if self.registry else self.image_name

    def secret_values(self) -> dict[str, str]:
        """All configured credentials, by secret name.  Empty values are skipped."""
        values = {
            "analysis_token": self.analysis_token.get_secret_value(),
            "scm_write_token": self.scm_write_token.get_secret_value(),
        }
        return {name: value for name, value in values.items() if value}

