from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

# Load environment variables from .env file
load_dotenv()

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "config.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "PDF_TOOLKIT_STORAGE": "storage.backend",
    "PDF_TOOLKIT_UPLOAD_DIR": "storage.upload_dir",
    "S3_BUCKET_NAME": "storage.s3_bucket",
    "PDF_TOOLKIT_S3_PREFIX": "storage.s3_prefix",
    "PDF_TOOLKIT_DATABASE": "database.backend",
    "PDF_TOOLKIT_DB_PATH": "database.path",
    "PDF_TOOLKIT_MAX_FILE_SIZE": "upload.max_file_size",
    "PDF_TOOLKIT_MAX_FILES": "upload.max_files",
    "PDF_TOOLKIT_LIBREOFFICE": "conversion.libreoffice_path",
    "PDF_TOOLKIT_MASTER_KEY": "auth.master_key",
    "PDF_TOOLKIT_KEYS_DB_PATH": "auth.keys_db_path",
    "PDF_TOOLKIT_LOG_LEVEL": "logging.level",
}

@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _env_overrides(environ: Mapping[str, str]) -> DictConfig:
    dotlist = [f"{key}={environ[name]}" for name, key in ENV_OVERRIDES.items() if environ.get(name)]
    return OmegaConf.from_dotlist(dotlist)


def load_settings(overrides: Optional[Dict[str, Any]] = None, environ: Optional[Mapping[str, str]] = None) -> DictConfig:
    """
    Build the runtime configuration.

    Precedence, lowest first: packaged config.yaml, environment variables,
    explicit overrides (used by tests and embedding applications).
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)

    env_config = _env_overrides(os.environ if environ is None else environ)
    merged = OmegaConf.merge(base, env_config, OmegaConf.create(overrides or {}))
    return DictConfig(merged)


def tool_defaults(config: DictConfig, tool_id: str) -> Dict[str, Any]:
    if tool_id not in config.tools:
        return {}
    return OmegaConf.to_container(config.tools[tool_id], resolve=True)  # type: ignore[return-value]


def _merge_options(defaults: Dict[str, Any], submitted: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(defaults)
    for key, value in submitted.items():
        if value is None:
            continue
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge_options(merged[key], value)
        else:
            merged[key] = value
    return merged


def make_tool_options(config: DictConfig, tool_id: str, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Merge submitted tool options over the configured defaults.

    Keys whose submitted value is None are dropped so they fall back to the
    default instead of overriding it. Submitted values never pass through
    OmegaConf, so strings such as ``"${price}"`` are kept literally.
    """
    return _merge_options(tool_defaults(config, tool_id), options or {})
