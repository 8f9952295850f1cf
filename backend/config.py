"""
Runtime configuration for the Switchyard gateway.

Environment variables are loaded from the nearest `.env` file. Upstream
adapters are described in a YAML file (see `adapters.example.yaml`):

    adapters:
      - id: github
        name: GitHub
        prefix: gh-
        transport:
          type: stdio
          command: npx
          args: ["-y", "@modelcontextprotocol/server-github"]
          env:
            GITHUB_PERSONAL_ACCESS_TOKEN: ${GITHUB_TOKEN}
        requires_env: [GITHUB_TOKEN]
        rules:
          - context: code
            reason: Primary source for repositories and issues
"""

import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import find_dotenv, load_dotenv

from adapters.types import AdapterConfig

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./data/switchyard.db"
DEFAULT_ADAPTERS_CONFIG = "./adapters.yaml"
FALLBACK_CONTEXT = "general"
EXTERNAL_SOURCE_PREFIX = "ext-"
URI_SCHEME = "switchyard"

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read int env with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


@dataclass(frozen=True)
class GatewayConfig:
    database_url: str
    adapters_config: Path
    auth_token: str
    readonly_token: str
    analytics_retention_days: int
    routing_guide_ttl_sec: float
    host: str
    port: int
    log_level: str


def load_gateway_config() -> GatewayConfig:
    """Snapshot the current environment into a GatewayConfig."""
    return GatewayConfig(
        database_url=os.getenv("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL,
        adapters_config=Path(
            os.getenv("ADAPTERS_CONFIG", "").strip() or DEFAULT_ADAPTERS_CONFIG
        ),
        auth_token=str(os.getenv("AUTH_TOKEN") or "").strip(),
        readonly_token=str(os.getenv("READONLY_TOKEN") or "").strip(),
        analytics_retention_days=_env_int("ANALYTICS_RETENTION_DAYS", 30, minimum=1),
        routing_guide_ttl_sec=max(0.0, _env_float("ROUTING_GUIDE_TTL_SEC", 60.0)),
        host=os.getenv("HOST", "0.0.0.0"),
        port=_env_int("PORT", 8000, minimum=1),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def configure_logging(level: Optional[str] = None) -> None:
    """
    Route all diagnostics to stderr.

    stdout carries the MCP stdio protocol, so nothing else may write there.
    """
    resolved = level or load_gateway_config().log_level
    logging.basicConfig(
        stream=sys.stderr,
        level=getattr(logging, resolved, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# =============================================================================
# Adapter YAML
# =============================================================================


def _expand_env(value: Any) -> Any:
    """Expand ${VAR} references in strings nested anywhere in a YAML tree."""
    if isinstance(value, str):
        return _ENV_REFERENCE.sub(lambda m: os.getenv(m.group(1), ""), value)
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    return value


def _missing_env(names: List[str]) -> List[str]:
    return [name for name in names if not str(os.getenv(name) or "").strip()]


def parse_adapter_configs(raw: Any) -> List[AdapterConfig]:
    """Validate a parsed YAML document into adapter configs."""
    if raw is None:
        return []
    if isinstance(raw, dict):
        raw = raw.get("adapters") or []
    if not isinstance(raw, list):
        raise ValueError("Adapter config must be a list or a mapping with an 'adapters' key.")

    configs: List[AdapterConfig] = []
    seen_ids = set()
    for entry in raw:
        config = AdapterConfig.model_validate(_expand_env(entry))
        if config.id in seen_ids:
            raise ValueError(f"Duplicate adapter id '{config.id}' in adapter config.")
        seen_ids.add(config.id)

        missing = _missing_env(config.requires_env)
        if config.enabled and missing:
            logger.info(
                "[adapter:%s] disabled, missing env: %s", config.id, ", ".join(missing)
            )
            config = config.model_copy(update={"enabled": False})
        configs.append(config)
    return configs


def load_adapter_configs(path: Optional[Union[Path, str]] = None) -> List[AdapterConfig]:
    """Read the adapter YAML file; a missing file means no upstream adapters."""
    config_path = Path(path) if path is not None else load_gateway_config().adapters_config
    if not config_path.exists():
        logger.info("No adapter config at %s; running with native tools only.", config_path)
        return []
    with config_path.open("r", encoding="utf-8") as handle:
        document: Dict[str, Any] = yaml.safe_load(handle)
    return parse_adapter_configs(document)
