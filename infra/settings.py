from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from infra.logging_config import get_logger

logger = get_logger(__name__)


# =========================
# MODELOS DE CONFIGURACIÓN
# =========================


class StorageSettings(BaseModel):
    backend: Literal["memory", "sqlite"] = "memory"
    sqlite_path: str = "data/vault/ledger.db"
    busy_timeout_s: float = Field(default=30.0, gt=0)


class LoggingSettings(BaseModel):
    level: str = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseModel):
    """
    Config global del vault.

    Todo lo que cambie direcciones derivadas (program_id, seeds) vive aquí,
    NO hardcodeado en el engine: cambiar un seed cambia dónde viven los ledgers.
    """

    program_id: str = "token-vault"
    vault_seed: str = "vault"
    depositor_seed: str = "user_account"
    max_conflict_retries: int = Field(default=3, ge=0)
    journal_path: Optional[str] = None
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("program_id", "vault_seed", "depositor_seed")
    @classmethod
    def _non_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must be a non-empty string")
        return v


# =========================
# LOADER
# =========================

_DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "config" / "default.yml"

_SETTINGS: Optional[Settings] = None


def _read_raw_yaml(path: Path) -> Dict[str, Any]:
    """Lee YAML de forma segura. Si no existe o está mal formado, regresa dict vacío."""
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(
            "Config file not found, using defaults",
            extra={"extra_data": {"config_path": str(path)}},
        )
        return {}
    except (OSError, yaml.YAMLError) as exc:
        logger.error(
            "Error reading config file, using defaults",
            extra={"extra_data": {"config_path": str(path), "error": str(exc)}},
        )
        return {}

    if not isinstance(data, dict):
        logger.error(
            "Config YAML root is not a mapping, falling back to defaults",
            extra={"extra_data": {"config_path": str(path)}},
        )
        return {}
    return data


def _override_with_env(raw: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(raw)
    storage = dict(out.get("storage") or {})
    log_cfg = dict(out.get("logging") or {})

    if os.getenv("VAULT_PROGRAM_ID"):
        out["program_id"] = os.getenv("VAULT_PROGRAM_ID")
    if os.getenv("VAULT_MAX_CONFLICT_RETRIES"):
        out["max_conflict_retries"] = os.getenv("VAULT_MAX_CONFLICT_RETRIES")
    if os.getenv("VAULT_JOURNAL_PATH"):
        out["journal_path"] = os.getenv("VAULT_JOURNAL_PATH")

    # Storage
    if os.getenv("VAULT_STORAGE_BACKEND"):
        storage["backend"] = os.getenv("VAULT_STORAGE_BACKEND", "").strip().lower()
    if os.getenv("VAULT_SQLITE_PATH"):
        storage["sqlite_path"] = os.getenv("VAULT_SQLITE_PATH")

    # Logging
    if os.getenv("LOG_LEVEL"):
        log_cfg["level"] = os.getenv("LOG_LEVEL")
    if os.getenv("LOG_FORMAT"):
        log_cfg["format"] = os.getenv("LOG_FORMAT", "").strip().lower()

    out["storage"] = storage
    out["logging"] = log_cfg
    return out


def load_settings(path: Optional[Path] = None) -> Settings:
    """
    Carga la configuración desde YAML + env y la valida con Pydantic.

    - Si no hay archivo -> defaults.
    - Si está mal formado o no valida -> defaults (logged).
    - Cachea en memoria salvo que se pida un path específico.
    """
    global _SETTINGS

    if _SETTINGS is not None and path is None:
        return _SETTINGS

    load_dotenv(override=False)

    config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH
    raw = _override_with_env(_read_raw_yaml(config_path))

    try:
        settings = Settings(**raw)
    except (ValidationError, ValueError, TypeError) as exc:
        logger.error(
            "Invalid config, using defaults",
            extra={"extra_data": {"config_path": str(config_path), "error": str(exc)}},
        )
        settings = Settings()
    else:
        logger.info(
            "Config loaded successfully",
            extra={"extra_data": {"config_path": str(config_path)}},
        )

    if path is None:
        _SETTINGS = settings
    return settings


def reset_settings_cache() -> None:
    global _SETTINGS
    _SETTINGS = None
