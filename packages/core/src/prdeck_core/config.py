import os
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG: dict = {
    "db_path": None,  # None = $XDG_DATA_HOME/prdeck/prdeck.db
    "repositories": [],  # owner/name slugs synced by `prdeck sync` and `prdeck watch`
    "issue_poll_interval": 15,
    "comment_poll_interval": 30,
    "request_timeout": 15,
    "github_api_url": None,  # None = https://api.github.com; set for GitHub Enterprise
    "max_attempts": 3,
    "backoff_base": 1.0,
    "backoff_max": 30.0,
    "page_size": 100,
    "workers": 4,
    "deleted_retention_seconds": 300,  # soft-deleted comments linger this long before purge
    "comment_ttl_days": 7,
    "comment_cap": 7500,
    "log_level": "WARNING",
}


def load_config(config_path: str = ".prdeck.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prdeck.yml in the current directory
      3. CLI argument overrides
    """
    config = {**DEFAULT_CONFIG, "repositories": list(DEFAULT_CONFIG["repositories"])}

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError(f"{config_path} must contain a mapping, got {type(file_config).__name__}")
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Credentials never come from the config file.
    config["github_token"] = os.environ.get("GITHUB_TOKEN")

    return config


def normalize_slug(slug: str) -> str:
    """Validate an ``owner/name`` slug and strip surrounding whitespace and a trailing ``.git``."""
    cleaned = slug.strip().removesuffix(".git").strip("/")
    parts = cleaned.split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Expected a repository slug like owner/name, got {slug!r}")
    return cleaned
