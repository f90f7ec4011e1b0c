"""Settings models — pydantic-settings with env var support."""

from __future__ import annotations

from pydantic_settings import BaseSettings

ENV_PREFIX = "EDGEFLEET_"
AGENT_ENV_PREFIX = "EDGEFLEET_AGENT_"


class Settings(BaseSettings):
    """Server settings.

    Use ``ConfigLoader.load_settings()`` to build with YAML + env var layering.
    Direct construction (e.g. in tests) skips YAML loading.
    """

    database_url: str = "sqlite+aiosqlite:///edgefleet.db"

    # Admin bearer tokens (issued by an external identity provider).
    admin_role: str = "edge-admin"
    admin_token_secret: str = ""
    admin_token_algorithms: list[str] = ["HS256"]
    admin_jwks_url: str = ""
    admin_token_issuer: str = ""
    admin_token_audience: str = ""

    # Certificate authority.
    ca_cert_path: str = "ca/ca.crt"
    ca_key_path: str = "ca/ca.key"
    ca_auto_generate: bool = True
    ca_common_name: str = "edgefleet device CA"
    ca_sign_timeout_seconds: float = 10.0
    certificate_validity_days: int = 90

    # Mutual-TLS identity of devices.
    client_cert_header: str = "X-SSL-Client-Cert"
    trust_client_cert_header: bool = False

    # Task dispatch.
    task_poll_batch_size: int = 5
    task_running_timeout_seconds: int = 900

    model_config = {"env_prefix": ENV_PREFIX}


class AgentSettings(BaseSettings):
    """Device-side runtime settings.

    Use ``ConfigLoader.load_agent_settings()`` for YAML + env var layering.
    """

    server_url: str = "https://localhost:8443"
    server_ca_bundle: str = ""
    state_dir: str = "/var/lib/edgefleet"
    poll_interval_seconds: float = 5.0
    enrollment_retry_seconds: float = 5.0
    request_timeout_seconds: float = 15.0
    executor: str = "edgefleet.agent.executor:default_executor"

    model_config = {"env_prefix": AGENT_ENV_PREFIX}
