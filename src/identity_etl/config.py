"""identity_etl.config

Import settings: store provider, connection string and batch size.

Settings come from an optional YAML file with an ``import:`` section,
overridden by environment variables:

    import:
      provider: Postgres          # SqlServer | Postgres | MySql
      connection_string: "host=localhost dbname=identity"
      batch_size: 500

    IMPORT_PROVIDER / IMPORT_CONNECTION_STRING / IMPORT_BATCH_SIZE
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from identity_etl.shared import ConfigError, UnsupportedProviderError

DEFAULT_SETTINGS_PATH = Path("./import_settings.yml")
DEFAULT_PROVIDER = "SqlServer"
DEFAULT_BATCH_SIZE = 500

PROVIDER_ALIASES = {
    "sqlserver": "SqlServer",
    "postgres": "Postgres",
    "postgresql": "Postgres",
    "mysql": "MySql",
    "mariadb": "MySql",
}

ENV_PROVIDER = "IMPORT_PROVIDER"
ENV_CONNECTION_STRING = "IMPORT_CONNECTION_STRING"
ENV_BATCH_SIZE = "IMPORT_BATCH_SIZE"


@dataclass(frozen=True)
class ImportSettings:
    provider: str
    connection_string: str
    batch_size: int = DEFAULT_BATCH_SIZE


def normalize_provider(raw: str | None) -> str:
    """Map a provider name (any case, known aliases) to its canonical form."""
    key = (raw or "").strip().lower()
    provider = PROVIDER_ALIASES.get(key)
    if provider is None:
        raise UnsupportedProviderError(
            f"Unsupported provider {raw!r}. Use SqlServer | Postgres | MySql."
        )
    return provider


def clamp_batch_size(raw: Any) -> int:
    try:
        size = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"batch_size must be an integer, got {raw!r}") from None
    return max(1, size)


def build_settings(values: Mapping[str, Any]) -> ImportSettings:
    """Validate a raw mapping and return ImportSettings."""
    connection_string = str(values.get("connection_string") or "").strip()
    if not connection_string:
        raise ConfigError("import.connection_string is empty.")
    provider = normalize_provider(values.get("provider") or DEFAULT_PROVIDER)
    batch_size = values.get("batch_size")
    return ImportSettings(
        provider=provider,
        connection_string=connection_string,
        batch_size=DEFAULT_BATCH_SIZE if batch_size is None else clamp_batch_size(batch_size),
    )


def load_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> ImportSettings:
    """Load settings from YAML (if any) and apply environment overrides.

    An explicit path must exist; the default path is optional.

    Raises:
        FileNotFoundError: If an explicit settings path does not exist.
        ConfigError: If the merged settings are invalid.
    """
    environ = environ if environ is not None else {}
    values: dict[str, Any] = {}

    settings_path = path if path is not None else DEFAULT_SETTINGS_PATH
    if path is not None or settings_path.exists():
        data = yaml.safe_load(settings_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{settings_path}: expected a mapping at top level")
        section = data.get("import", data)
        if not isinstance(section, dict):
            raise ConfigError(f"{settings_path}: 'import' must be a mapping")
        values.update(section)

    if environ.get(ENV_PROVIDER):
        values["provider"] = environ[ENV_PROVIDER]
    if environ.get(ENV_CONNECTION_STRING):
        values["connection_string"] = environ[ENV_CONNECTION_STRING]
    if environ.get(ENV_BATCH_SIZE):
        values["batch_size"] = environ[ENV_BATCH_SIZE]

    return build_settings(values)
