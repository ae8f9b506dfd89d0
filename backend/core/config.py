"""Configuration loading utilities for YAML-based application settings."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import yaml

from .logging_config import get_logger


logger = get_logger(__name__)
_BASE_DIR = Path(__file__).resolve().parent.parent
_CONFIG_PATH = _BASE_DIR / "config.yml"


@dataclass(frozen=True)
class AppSettings:
    """Application settings loaded from YAML configuration file."""

    app_name: str
    debug: bool
    host: str
    port: int
    log_level: str
    currency: str
    firebase_enabled: bool
    firebase_project_id: Optional[str]
    firebase_credentials_path: Optional[str]
    firebase_collection_prefix: str
    wallet_service_base_url: Optional[str]
    wallet_service_timeout_sec: int
    evidence_directory: str
    evidence_public_base_url: str
    require_payer_phone: bool
    require_transaction_reference: bool
    require_payment_evidence: bool
    overdue_sweep_enabled: bool
    overdue_sweep_interval_sec: int
    allocation_tolerance: Decimal


def _to_bool(value: Any, default: bool = False) -> bool:
    """Convert value to bool with a default fallback."""
    try:
        if isinstance(value, bool):
            return value
        return value.strip().lower() in {"1", "true", "yes", "on"}
    except (AttributeError, ValueError):
        logger.warning("Invalid boolean value '%s'. Using default=%s", value, default)
        return default


def _to_int(value: Any, default: int) -> int:
    """Convert value to int with a default fallback."""
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid integer value '%s'. Using default=%s", value, default)
        return default


def _to_decimal(value: Any, default: str) -> Decimal:
    """Convert value to Decimal with a default fallback."""
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        logger.warning("Invalid decimal value '%s'. Using default=%s", value, default)
        return Decimal(default)


def _optional_str(value: Any) -> Optional[str]:
    """Return stripped string or None for blank values."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _read_config(path: Optional[Path] = None) -> dict:
    """Read and parse YAML configuration."""
    config_path = path or _CONFIG_PATH
    try:
        with config_path.open("r", encoding="utf-8") as config_file:
            config_data = yaml.safe_load(config_file) or {}
        logger.info("Configuration loaded from %s", config_path)
        return config_data
    except FileNotFoundError:
        logger.warning("Config file not found at %s. Falling back to defaults.", config_path)
        return {}
    except Exception:
        logger.exception("Failed to load config file from %s", config_path)
        return {}


def get_env(key: str, default: Optional[str] = None) -> Optional[str]:
    """Config reader using dot-notation keys."""
    try:
        current: Any = _read_config()
        for part in key.split("."):
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]
        if current is None:
            return default
        return str(current)
    except Exception:
        logger.exception("Failed to read config key '%s'.", key)
        return default


def load_settings(path: Optional[str] = None) -> AppSettings:
    """Load and validate application settings from `config.yml`."""
    config = _read_config(Path(path) if path else None)
    app_cfg = config.get("app", {}) or {}
    firebase_cfg = config.get("firebase", {}) or {}
    wallet_cfg = config.get("wallet_service", {}) or {}
    evidence_cfg = config.get("evidence_storage", {}) or {}
    manual_cfg = config.get("manual_payment", {}) or {}
    sweep_cfg = config.get("overdue_sweep", {}) or {}
    ledger_cfg = config.get("ledger", {}) or {}

    return AppSettings(
        app_name=str(app_cfg.get("name", "Property Payment Ledger API")),
        debug=_to_bool(app_cfg.get("debug", False), False),
        host=str(app_cfg.get("host", "127.0.0.1")),
        port=_to_int(app_cfg.get("port", 8000), 8000),
        log_level=str(app_cfg.get("log_level", "INFO")).upper(),
        currency=str(app_cfg.get("currency", "NGN")).upper(),
        firebase_enabled=_to_bool(firebase_cfg.get("enabled", False), False),
        firebase_project_id=_optional_str(firebase_cfg.get("project_id")),
        firebase_credentials_path=_optional_str(firebase_cfg.get("credentials_path")),
        firebase_collection_prefix=str(firebase_cfg.get("collection_prefix", "property_payment")),
        wallet_service_base_url=_optional_str(wallet_cfg.get("base_url")),
        wallet_service_timeout_sec=_to_int(wallet_cfg.get("timeout_sec", 10), 10),
        evidence_directory=str(evidence_cfg.get("directory", "var/evidence")),
        evidence_public_base_url=str(evidence_cfg.get("public_base_url", "/evidence")),
        require_payer_phone=_to_bool(manual_cfg.get("require_payer_phone", False), False),
        require_transaction_reference=_to_bool(manual_cfg.get("require_transaction_reference", False), False),
        require_payment_evidence=_to_bool(manual_cfg.get("require_payment_evidence", True), True),
        overdue_sweep_enabled=_to_bool(sweep_cfg.get("enabled", False), False),
        overdue_sweep_interval_sec=_to_int(sweep_cfg.get("interval_sec", 3600), 3600),
        allocation_tolerance=_to_decimal(ledger_cfg.get("allocation_tolerance", "0.01"), "0.01"),
    )
