"""Load and validate configuration from YAML with env var substitution."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml

DEFAULT_EMBEDDING_MODEL = "minishlab/potion-base-8M"


def _load_dotenv(path: str | Path = ".env") -> None:
    """Load a .env file into os.environ (without overwriting existing vars)."""
    env_path = Path(path)
    if not env_path.is_file():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key and key not in os.environ:
                os.environ[key] = value


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} patterns in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{([^}]+)\}")
        match = pattern.search(value)
        if match:
            env_val = os.environ.get(match.group(1), "")
            if match.group(0) == value:
                return env_val
            return pattern.sub(lambda m: os.environ.get(m.group(1), ""), value)
        return value
    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def load_config(path: str | Path = "config.yaml") -> dict[str, Any]:
    """Load config from YAML file and resolve environment variables."""
    _load_dotenv()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return _resolve_env_vars(raw)


def get_db_path(config: dict) -> str:
    """Get database path from config."""
    return config.get("database", {}).get("path", "data/trendschema.db")


def get_trend_config(config: dict) -> dict:
    """Trend lifetime settings."""
    cfg = config.get("trends", {})
    return {
        "default_half_life_hours": float(cfg.get("default_half_life_hours", 24)),
        "expiry_multiplier": float(cfg.get("expiry_multiplier", 2.0)),
    }


def get_active_trend_sources(config: dict) -> list[str]:
    """Return list of enabled trend source names."""
    sources = config.get("trends", {}).get("sources", {"document_store": {"enabled": True}})
    return [name for name, cfg in sources.items() if (cfg or {}).get("enabled", False)]


def get_content_index_config(config: dict) -> dict:
    """Similarity backend selection and connection settings."""
    cfg = config.get("content_index", {})
    return {
        "backend": cfg.get("backend", "sqlite"),
        "base_url": cfg.get("base_url", ""),
        "api_key": cfg.get("api_key", ""),
        "timeout": float(cfg.get("timeout", 10)),
        "max_retries": int(cfg.get("max_retries", 3)),
        "page_size": int(cfg.get("page_size", 2000)),
        "embedding_model": config.get("embeddings", {}).get("model", DEFAULT_EMBEDDING_MODEL),
    }


def get_matcher_config(config: dict) -> dict:
    cfg = config.get("matcher", {})
    return {
        "threshold": float(cfg.get("threshold", 0.72)),
        "volume_saturation": int(cfg.get("volume_saturation", 10_000)),
        "max_concurrency_per_client": int(cfg.get("max_concurrency_per_client", 4)),
    }


def get_cache_config(config: dict) -> dict:
    cfg = config.get("cache", {})
    return {
        "max_entries": int(cfg.get("max_entries", 10_000)),
        "grace_seconds": float(cfg.get("grace_seconds", 300)),
        "fill_timeout_seconds": float(cfg.get("fill_timeout_seconds", 10)),
        "default_ttl_hours": float(cfg.get("default_ttl_hours", 6)),
        "persist": bool(cfg.get("persist", True)),
    }


def get_harvest_config(config: dict) -> dict:
    cfg = config.get("harvest", {})
    return {
        "interval_seconds": float(cfg.get("interval_seconds", 300)),
        "recent_matches": int(cfg.get("recent_matches", 500)),
    }


def get_delivery_config(config: dict) -> dict:
    cfg = config.get("delivery", {})
    return {
        "host": cfg.get("host", "0.0.0.0"),
        "port": int(cfg.get("port", 8080)),
        "lookup_timeout_seconds": float(cfg.get("lookup_timeout_seconds", 0.05)),
        "fill_timeout_seconds": float(cfg.get("fill_timeout_seconds", 5)),
    }
