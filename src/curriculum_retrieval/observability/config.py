"""
Phoenix/OpenTelemetry Configuration

Loads observability settings from environment variables.
Supports graceful degradation when Phoenix is not installed.
"""

import os
from dataclasses import dataclass


def _flag(name: str) -> bool:
    return os.environ.get(name, "false").lower() in ("true", "1", "yes")


@dataclass
class PhoenixConfig:
    """Configuration for Phoenix observability.

    Environment Variables:
        PHOENIX_ENABLED: Enable Phoenix tracing (default: false)
        PHOENIX_PROJECT_NAME: Project name in Phoenix UI (default: curriculum-retrieval)
        PHOENIX_COLLECTOR_ENDPOINT: Remote endpoint (optional, local if empty)
        PHOENIX_CAPTURE_CONTENT: Attach query text to spans (default: false)

    PRIVACY WARNING:
        Setting PHOENIX_CAPTURE_CONTENT=true exports raw student questions to
        Phoenix/OTLP endpoints. Queries come from minors using a tutoring
        product; only enable in controlled environments.
    """

    enabled: bool = False
    project_name: str = "curriculum-retrieval"
    collector_endpoint: str | None = None
    capture_content: bool = False

    @classmethod
    def from_env(cls) -> "PhoenixConfig":
        """Load config from environment variables."""
        return cls(
            enabled=_flag("PHOENIX_ENABLED"),
            project_name=os.environ.get("PHOENIX_PROJECT_NAME", "curriculum-retrieval"),
            collector_endpoint=os.environ.get("PHOENIX_COLLECTOR_ENDPOINT") or None,
            # Opt-in only
            capture_content=_flag("PHOENIX_CAPTURE_CONTENT"),
        )


# Global config singleton
_config: PhoenixConfig | None = None


def get_config() -> PhoenixConfig:
    """Get the global Phoenix config (lazy-loaded from env)."""
    global _config
    if _config is None:
        _config = PhoenixConfig.from_env()
    return _config


def reset_config() -> None:
    """Reset config (useful for testing)."""
    global _config
    _config = None
