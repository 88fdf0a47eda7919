"""
Config loader for gptline.
Reads config.yaml once per process. All other modules import from here.

Lookup order for the file: explicit path, $GPTLINE_CONFIG, then
~/.config/gptline/config.yaml. A missing file is not an error: the built-in
defaults below apply. Environment variables always win over the file.
"""

import copy
import os
import re
import yaml
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

_DEFAULT_CONFIG_PATH = Path("~/.config/gptline/config.yaml")

DEFAULTS: dict = {
    "api": {
        "url": "https://api.openai.com/v1/chat/completions",
        "key": "",
        "model": "gpt-4o-mini",
        "connect_timeout": 10,
    },
    "storage": {
        "cache_dir": "~/.cache/gptline",
        "conversations_dir": "~/.local/share/gptline/conversations",
    },
    "chat": {
        "system_prompt": "You are a helpful assistant. Answer concisely.",
        "title_prompt": (
            "Summarize the following message as a short title of at most "
            "six words. Reply with the title only."
        ),
    },
    "logging": {
        "level": "WARNING",
        "file": "",
    },
}

# Environment variable -> (section, key)
_ENV_OVERRIDES = {
    "OPENAI_API_KEY": ("api", "key"),
    "OPENAI_MODEL": ("api", "model"),
    "GPTLINE_CACHE_DIR": ("storage", "cache_dir"),
    "GPTLINE_CONVERSATIONS_DIR": ("storage", "conversations_dir"),
    "GPTLINE_LOG_LEVEL": ("logging", "level"),
}

_config: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    """Overlay override onto base. Empty values keep the base value."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        elif value not in (None, ""):
            base[key] = value
    return base


def config_path(path: Path | str | None = None) -> Path:
    """Where the config file is looked up."""
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get("GPTLINE_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return _DEFAULT_CONFIG_PATH.expanduser()


def load_config(path: Path | str | None = None, reload: bool = False) -> dict:
    """Load and cache config: defaults, then YAML file, then environment."""
    global _config
    if _config is not None and not reload:
        return _config

    cfg = copy.deepcopy(DEFAULTS)

    cfg_file = config_path(path)
    if cfg_file.exists():
        with open(cfg_file) as f:
            try:
                raw = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Cannot parse {cfg_file}: {e}") from e
        if not isinstance(raw, dict):
            raise ValueError(f"Config must be a mapping: {cfg_file}")
        _merge(cfg, _walk_and_resolve(raw))

    for var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(var)
        if value:
            cfg[section][key] = value

    _config = cfg
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Forget the cached config (tests and --config overrides)."""
    global _config
    _config = None
