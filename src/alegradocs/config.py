"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (ALEGRADOCS__CACHE__TTL_DAYS=2)
  2. alegradocs.yaml        (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; all fields have sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("alegradocs")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "docs.db")
_DEFAULT_CATALOG_PATH = str(Path(_DEFAULT_DATA_DIR) / "catalog.json")
_DEFAULT_MODEL_DIR = str(Path(_DEFAULT_DATA_DIR) / "models")


def _find_config_file() -> str | None:
    """Return the path of the first alegradocs.yaml found, or None."""
    candidates = [
        Path("alegradocs.yaml"),
        Path(platformdirs.user_config_dir("alegradocs")) / "alegradocs.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class DocsSettings(BaseModel):
    base_url: str = "https://developer.alegra.com"
    reference_path: str = "/reference"
    extra_allowed_domains: list[str] = []


class CacheSettings(BaseModel):
    ttl_days: float = Field(default=5.0, gt=0)
    db_path: str = _DEFAULT_DB_PATH
    catalog_path: str = _DEFAULT_CATALOG_PATH


class FetcherSettings(BaseModel):
    timeout_seconds: float = 30.0
    max_redirects: int = Field(default=5, ge=0)
    user_agent: str = "Mozilla/5.0 (compatible; alegradocs/1.0)"


class EmbeddingSettings(BaseModel):
    enabled: bool = True
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    max_chars: int = Field(default=1500, ge=1)
    warm_up: bool = True
    cache_dir: str = _DEFAULT_MODEL_DIR


class RetrievalSettings(BaseModel):
    default_section_limit: int = Field(default=4, ge=1)
    query_section_limit: int = Field(default=3, ge=1)
    candidate_k: int = Field(default=20, ge=1)
    rrf_k: int = Field(default=60, gt=0)


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: ALEGRADOCS__CACHE__TTL_DAYS=2
        env_prefix="ALEGRADOCS__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    docs: DocsSettings = DocsSettings()
    cache: CacheSettings = CacheSettings()
    fetcher: FetcherSettings = FetcherSettings()
    embedding: EmbeddingSettings = EmbeddingSettings()
    retrieval: RetrievalSettings = RetrievalSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
