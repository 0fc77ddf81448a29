# load_config.py
import os
import re
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

from azure_gateway.errors import ConfigurationError

logger = logging.getLogger("azure_gateway.config")

DEFAULT_CHAT_API_VERSION = "2024-02-15-preview"
DEFAULT_CONFIG_PATH = "models.json"

MODEL_TYPE_CHAT = "chat"
MODEL_TYPE_CODEX = "codex"
MODEL_TYPES = (MODEL_TYPE_CHAT, MODEL_TYPE_CODEX)

_MODEL_ENV_RE = re.compile(r"^AZURE_MODEL_(.+?)_(DEPLOYMENT_NAME|ENDPOINT|API_KEY|API_VERSION|MODEL_TYPE)$", re.IGNORECASE)
_MODEL_ENV_FIELDS = {
    "DEPLOYMENT_NAME": "deploymentName",
    "ENDPOINT": "endpoint",
    "API_KEY": "apiKey",
    "API_VERSION": "apiVersion",
    "MODEL_TYPE": "modelType",
}


@dataclass(frozen=True)
class AzureConfig:
    """Connection details for one Azure OpenAI deployment."""

    endpoint: str
    api_key: str
    deployment_name: str
    api_version: Optional[str] = None
    model_type: str = MODEL_TYPE_CHAT

    @property
    def is_codex(self) -> bool:
        return self.model_type == MODEL_TYPE_CODEX

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "AzureConfig":
        """Build from the camelCase shape used in the JSON file."""
        model_type = raw.get("modelType")
        return cls(
            endpoint=str(raw.get("endpoint") or "").strip(),
            api_key=str(raw.get("apiKey") or "").strip(),
            deployment_name=str(raw.get("deploymentName") or "").strip(),
            api_version=(str(raw["apiVersion"]).strip() if raw.get("apiVersion") else None),
            model_type=model_type if model_type in MODEL_TYPES else MODEL_TYPE_CHAT,
        )


# ---------------- .env ----------------
def load_env(path: Optional[str] = None) -> None:
    """Load a .env file without overriding variables already set."""
    load_dotenv(path, override=False)


def config_file_path() -> Path:
    return Path(os.getenv("CONFIG_PATH") or DEFAULT_CONFIG_PATH)


# ---------------- environment sources ----------------
def load_config_from_env() -> Optional[AzureConfig]:
    """Single-deployment configuration from AZURE_OPENAI_* variables."""
    endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
    api_key = os.getenv("AZURE_OPENAI_API_KEY")
    deployment = os.getenv("AZURE_OPENAI_DEPLOYMENT_NAME")
    if not endpoint or not api_key or not deployment:
        return None
    return AzureConfig(
        endpoint=endpoint.strip(),
        api_key=api_key.strip(),
        deployment_name=deployment.strip(),
        api_version=(os.getenv("AZURE_OPENAI_API_VERSION") or DEFAULT_CHAT_API_VERSION).strip(),
    )


def load_multi_model_config_from_env() -> Optional[Dict[str, Any]]:
    """
    Per-model table from AZURE_MODEL_<NAME>_<FIELD> variables.

    <NAME> is lower-cased and underscores become dashes, so
    AZURE_MODEL_GPT_4O_DEPLOYMENT_NAME configures model "gpt-4o". Returns
    None unless the default endpoint/key are set and at least one model
    variable exists.
    """
    default_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
    default_key = os.getenv("AZURE_OPENAI_API_KEY")
    if not default_endpoint or not default_key:
        return None

    models: Dict[str, Dict[str, str]] = {}
    for key, value in os.environ.items():
        m = _MODEL_ENV_RE.match(key)
        if not m or not value:
            continue
        name = m.group(1).lower().replace("_", "-")
        field = _MODEL_ENV_FIELDS[m.group(2).upper()]
        models.setdefault(name, {})[field] = value.strip()

    if not models:
        return None

    return {
        "default": {
            "endpoint": default_endpoint.strip(),
            "apiKey": default_key.strip(),
            "apiVersion": (os.getenv("AZURE_OPENAI_API_VERSION") or DEFAULT_CHAT_API_VERSION).strip(),
        },
        "models": models,
    }


# ---------------- file source ----------------
def load_config_from_file(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Read the JSON model table. Read on every call so edits made through the
    config endpoint apply to the next request. A missing or unreadable file is
    an empty table.
    """
    path = path or config_file_path()
    if not path.exists():
        return {"default": None, "models": {}}
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logger.error("[CONFIG] Error loading config file %s: %s", path, e)
        return {"default": None, "models": {}}
    if not isinstance(raw, dict):
        logger.error("[CONFIG] Config file %s must contain an object", path)
        return {"default": None, "models": {}}
    return raw


def infer_model_type(model_name: str, configured: Optional[str]) -> str:
    if configured in MODEL_TYPES:
        return configured
    # no explicit type: guess from the name
    if MODEL_TYPE_CODEX in model_name.lower():
        return MODEL_TYPE_CODEX
    return MODEL_TYPE_CHAT


def _resolve_from_table(table: Optional[Dict[str, Any]], model_name: str) -> Optional[AzureConfig]:
    if not table:
        return None
    models = table.get("models") or {}
    model_cfg = models.get(model_name)
    default_cfg = table.get("default")
    if not isinstance(model_cfg, dict) or not default_cfg or not model_cfg.get("deploymentName"):
        return None
    return AzureConfig(
        endpoint=model_cfg.get("endpoint") or default_cfg.get("endpoint") or "",
        api_key=model_cfg.get("apiKey") or default_cfg.get("apiKey") or "",
        deployment_name=model_cfg["deploymentName"],
        api_version=model_cfg.get("apiVersion") or default_cfg.get("apiVersion") or DEFAULT_CHAT_API_VERSION,
        model_type=infer_model_type(model_name, model_cfg.get("modelType")),
    )


def get_azure_config(model_name: Optional[str] = None) -> AzureConfig:
    """
    Resolve the Azure deployment for a model.

    Precedence: environment multi-model table, environment single-model
    variables, then the JSON file (its `models` table, then the legacy
    `azure` block).
    """
    if model_name:
        cfg = _resolve_from_table(load_multi_model_config_from_env(), model_name)
        if cfg:
            return cfg

    env_cfg = load_config_from_env()
    if env_cfg:
        return env_cfg

    file_cfg = load_config_from_file()
    if model_name:
        cfg = _resolve_from_table(file_cfg, model_name)
        if cfg:
            return cfg

    legacy = file_cfg.get("azure")
    if isinstance(legacy, dict):
        return AzureConfig.from_dict(legacy)

    suffix = f' for model "{model_name}"' if model_name else ""
    raise ConfigurationError(
        f"Azure OpenAI configuration not found{suffix}. "
        "Please set environment variables or configure the models file"
    )


def get_all_configured_models() -> List[str]:
    models: List[str] = []

    env_table = load_multi_model_config_from_env()
    if env_table:
        models.extend(env_table["models"].keys())

    file_cfg = load_config_from_file()
    for name in (file_cfg.get("models") or {}):
        if name not in models:
            models.append(name)

    if not models:
        env_cfg = load_config_from_env()
        if env_cfg:
            models.append(env_cfg.deployment_name)
        elif isinstance(file_cfg.get("azure"), dict) and file_cfg["azure"].get("deploymentName"):
            models.append(file_cfg["azure"]["deploymentName"])

    return models


def validate_config(config: AzureConfig) -> None:
    if not config.endpoint:
        raise ConfigurationError("Azure OpenAI endpoint is required")
    if not config.api_key:
        raise ConfigurationError("Azure OpenAI API key is required")
    if not config.deployment_name:
        raise ConfigurationError("Azure OpenAI deployment name is required")

    parsed = urlparse(config.endpoint)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError("Azure OpenAI endpoint must be a valid URL")


# ---------------- persisted file read/write ----------------
DEFAULT_FILE_CONFIG: Dict[str, Any] = {
    "default": {
        "endpoint": "",
        "apiKey": "",
        "apiVersion": DEFAULT_CHAT_API_VERSION,
    },
    "models": {},
}


def read_file_config() -> Dict[str, Any]:
    """File contents merged over the default structure, for the config editor."""
    raw = load_config_from_file()
    return {
        "default": {**DEFAULT_FILE_CONFIG["default"], **(raw.get("default") or {})},
        "models": raw.get("models") or {},
    }


def normalize_file_config(config: Dict[str, Any]) -> Dict[str, Any]:
    models: Dict[str, Dict[str, Any]] = {}
    for name, model_cfg in (config.get("models") or {}).items():
        if not isinstance(model_cfg, dict):
            continue
        entry: Dict[str, Any] = {"deploymentName": model_cfg.get("deploymentName") or name}
        for k, v in model_cfg.items():
            if k == "deploymentName" or v in ("", None):
                continue
            entry[k] = v
        models[name] = entry

    default = config.get("default") or {}
    return {
        "default": {
            "endpoint": default.get("endpoint") or "",
            "apiKey": default.get("apiKey") or "",
            "apiVersion": default.get("apiVersion") or DEFAULT_CHAT_API_VERSION,
        },
        "models": models,
    }


def save_file_config(config: Dict[str, Any]) -> Dict[str, Any]:
    normalized = normalize_file_config(config)
    path = config_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(normalized, f, indent=2)
    logger.info("[CONFIG] Config saved to file: %s", path)
    return normalized
