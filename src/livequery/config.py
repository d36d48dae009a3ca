"""
config.py — Engine configuration

Defaults live in the module constants below. A JSON file can override
any of them; it is validated against ``CONFIG_SCHEMA`` before use.

Example config file:
    {
      "staleness_seconds": 10,
      "persistence_path": "cache/livequery.db",
      "collection_schemas": {
        "task": {"type": "object", "required": ["title"]}
      }
    }
"""

from __future__ import annotations
import json
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

from .descriptor import InsertPolicy
from .errors import ConfigError
from .schemas import CONFIG_SCHEMA, validation_errors

DEFAULT_STALENESS_SECONDS = 30.0
DEFAULT_FETCH_RETRIES = 3
DEFAULT_SUBMIT_RETRIES = 3
DEFAULT_RETRY_BACKOFF_BASE = 0.25
DEFAULT_RETRY_BACKOFF_MAX = 5.0
DEFAULT_FETCH_WINDOW_PADDING = 0


@dataclass(frozen=True)
class EngineConfig:
    staleness_seconds: float = DEFAULT_STALENESS_SECONDS
    fetch_retries: int = DEFAULT_FETCH_RETRIES
    submit_retries: int = DEFAULT_SUBMIT_RETRIES
    retry_backoff_base: float = DEFAULT_RETRY_BACKOFF_BASE
    retry_backoff_max: float = DEFAULT_RETRY_BACKOFF_MAX
    insert_policy: InsertPolicy = InsertPolicy.AUTO
    persistence_path: Optional[str] = None
    encryption_key_b64: Optional[str] = None
    fetch_window_padding: int = DEFAULT_FETCH_WINDOW_PADDING
    collection_schemas: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped."""
        return min(self.retry_backoff_base * (2 ** (attempt - 1)), self.retry_backoff_max)

    def with_overrides(self, **overrides: Any) -> "EngineConfig":
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["insert_policy"] = self.insert_policy.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        """Build a config from a plain dict.

        Raises:
            ConfigError: If the dict does not match ``CONFIG_SCHEMA``.
        """
        errors = validation_errors(data, CONFIG_SCHEMA)
        if errors:
            raise ConfigError("; ".join(errors))
        values = dict(data)
        if "insert_policy" in values:
            values["insert_policy"] = InsertPolicy(values["insert_policy"])
        if "collection_schemas" in values:
            values["collection_schemas"] = dict(values["collection_schemas"])
        return cls(**values)


def load_config(path: str | Path) -> EngineConfig:
    """Read and validate a JSON configuration file.

    Raises:
        ConfigError: If the file is missing, not JSON, or fails validation.
    """
    config_path = Path(path)
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"config file not found: {config_path}") from None
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{config_path}: invalid JSON ({exc.msg} at line {exc.lineno})") from None
    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path}: top-level value must be an object")
    return EngineConfig.from_dict(raw)
