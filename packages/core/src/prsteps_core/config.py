import os
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_CONFIG: dict = {
    "model": "anthropic",
    "llm_model": None,  # None = provider default
    "llm_base_url": None,  # OpenAI-compatible endpoint, e.g. https://openrouter.ai/api/v1
    "request_timeout": 60,
    "guidelines": None,  # None = no extra instructions; set to a path string to add some
    # Clustering
    "proximity_lines": 10,
    "max_step_lines": 400,
    "symbol_fanout_limit": 8,
    # Context packs / repo index
    "max_context_symbols": 50,
    "max_references_per_symbol": 20,
    "max_indexed_files": 2000,
    "max_file_bytes": 200_000,
    "codebase_summary": True,  # summarise README, manifests and layout once per commit for the prompts
    # Dispatcher
    "max_attempts": 5,
    "backoff_seconds": 1.0,
    "max_backoff_seconds": 60.0,
    "workers": 4,
    # Persistence
    "store": "sqlite",
    "store_path": ".prsteps.db",
    "exclude": [],  # fnmatch patterns or directory names to skip (e.g. "migrations/", "*.min.js")
    "log_level": "INFO",
}


def load_config(config_path: str = ".prsteps.yml", cli_overrides: Optional[dict] = None) -> dict:
    """
    Load configuration by merging (in order of precedence):
      1. Built-in defaults
      2. .prsteps.yml in the current directory
      3. CLI argument overrides
    """
    config = {**DEFAULT_CONFIG, "exclude": list(DEFAULT_CONFIG["exclude"])}

    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
        config.update(file_config)

    if cli_overrides:
        for key, value in cli_overrides.items():
            if value is not None:
                config[key] = value

    # Credentials only ever come from the environment.
    config["github_token"] = os.environ.get("GITHUB_TOKEN")
    config["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY")
    config["openai_api_key"] = os.environ.get("OPENAI_API_KEY")

    return config


def load_guidelines(config: dict) -> str:
    """
    Load extra reviewer guidelines for the guidance prompt.

    If ``guidelines`` is set in config, loads from that path (relative to cwd).
    Otherwise returns an empty string.
    """
    custom_path = config.get("guidelines")
    if not custom_path:
        return ""
    p = Path(custom_path)
    if not p.exists():
        raise FileNotFoundError(f"Guidelines file not found: {custom_path}")
    return p.read_text()
