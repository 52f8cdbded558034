"""
Application configuration management.

Load order (each layer overrides the previous):
  1. ``config/default.toml``      — committed static defaults
  2. ``config/local.toml``        — optional local overrides (gitignored)
  3. ``.env``                     — local secrets and env overrides (gitignored)
  4. Environment variables        — ``ENSEMBLE_TRACKER_*`` prefix

Entry point: ``load_config(config_path=None) -> AppConfig``

Every component receives its section of an ``AppConfig`` at construction;
there are no module-level clients or settings singletons.
"""

from __future__ import annotations

import math
import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from ensemble_tracker.utils.time_utils import parse_horizon_days

# ── Sub-config models ─────────────────────────────────────────────────────────


class DatabaseConfig(BaseModel):
    """SQLite database connection settings."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "data/db/ensemble_tracker.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000


class ModelEndpointConfig(BaseModel):
    """One participating prediction model.

    Attributes:
        model_id: Stable identifier reported on every verdict.
        endpoint: Model name as known to the model server.
        timeout_seconds: Per-call bound for this model.
        enabled: Disabled models are not invoked.
    """

    model_config = ConfigDict(frozen=True)

    model_id: str
    endpoint: str
    timeout_seconds: float = 20.0
    enabled: bool = True

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {v}.")
        return v


def _default_models() -> list[ModelEndpointConfig]:
    return [
        ModelEndpointConfig(model_id="llama3-8b", endpoint="llama3:8b"),
        ModelEndpointConfig(model_id="mistral-7b-instruct", endpoint="mistral:7b-instruct"),
        ModelEndpointConfig(model_id="codellama-13b", endpoint="codellama:13b"),
    ]


class EnsembleConfig(BaseModel):
    """Ensemble fan-out and consensus settings.

    The order of ``models`` is the fixed model-priority order used as the
    last consensus tie-break.
    """

    model_config = ConfigDict(frozen=True)

    base_url: str = "http://localhost:11434"
    timeout_seconds: float = 30.0
    high_confidence: float = 0.8
    medium_confidence: float = 0.6
    models: list[ModelEndpointConfig] = _default_models()

    @model_validator(mode="after")
    def validate_thresholds(self) -> "EnsembleConfig":
        for name in ("high_confidence", "medium_confidence"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be in [0.0, 1.0], got {value}.")
        if self.medium_confidence > self.high_confidence:
            raise ValueError(
                f"medium_confidence ({self.medium_confidence}) must be <= "
                f"high_confidence ({self.high_confidence})."
            )
        if self.timeout_seconds <= 0:
            raise ValueError(f"timeout_seconds must be > 0, got {self.timeout_seconds}.")
        ids = [m.model_id for m in self.models]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate model_id in ensemble.models: {ids}.")
        return self

    @property
    def priority(self) -> list[str]:
        """Model ids in tie-break priority order (highest first)."""
        return [m.model_id for m in self.models]


class TrackingConfig(BaseModel):
    """Recommendation tracking and scoring settings."""

    model_config = ConfigDict(frozen=True)

    tolerance_pct: float = 1.0            # flat band (in %) still counted as correct
    default_time_horizon: str = "90d"
    default_risk_tolerance: str = "moderate"
    fallback_message: str = (
        "Analysis could not be completed due to technical issues. "
        "Holding is the safe default until models are available again."
    )
    recent_limit: int = 10

    @field_validator("tolerance_pct")
    @classmethod
    def validate_tolerance(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"tolerance_pct must be >= 0, got {v}.")
        return v

    @field_validator("default_time_horizon")
    @classmethod
    def validate_horizon(cls, v: str) -> str:
        parse_horizon_days(v)
        return v


class HealthConfig(BaseModel):
    """Portfolio health score weighting.

    Weights are a tunable policy; they must be non-negative and sum to 1.
    """

    model_config = ConfigDict(frozen=True)

    return_weight: float = 0.5
    follow_weight: float = 0.3
    diversification_weight: float = 0.2
    return_scale: float = 2.5             # score points per 1% return around 50

    @model_validator(mode="after")
    def validate_weights(self) -> "HealthConfig":
        weights = (self.return_weight, self.follow_weight, self.diversification_weight)
        if any(w < 0 for w in weights):
            raise ValueError(f"Health weights must be >= 0, got {weights}.")
        if not math.isclose(sum(weights), 1.0, abs_tol=1e-6):
            raise ValueError(f"Health weights must sum to 1.0, got {sum(weights):.4f}.")
        if self.return_scale <= 0:
            raise ValueError(f"return_scale must be > 0, got {self.return_scale}.")
        return self


class PeerConfig(BaseModel):
    """Peer comparison settings."""

    model_config = ConfigDict(frozen=True)

    top_fraction: float = 0.1

    @field_validator("top_fraction")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"top_fraction must be in (0.0, 1.0], got {v}.")
        return v


class LoggingConfig(BaseModel):
    """Logging output settings."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    log_file: str = "data/logs/ensemble_tracker.log"
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"Log level must be one of {sorted(valid)}, got '{v}'.")
        return v.upper()


class AppConfig(BaseModel):
    """Complete application configuration, the single source of truth."""

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig = DatabaseConfig()
    ensemble: EnsembleConfig = EnsembleConfig()
    tracking: TrackingConfig = TrackingConfig()
    health: HealthConfig = HealthConfig()
    peers: PeerConfig = PeerConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: bool = False


# ── Loader ────────────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).parent.parent


def _find_project_root() -> Path:
    """Walk up from this file to find the project root (contains pyproject.toml)."""
    candidate = Path(__file__).parent
    for _ in range(5):
        if (candidate / "pyproject.toml").exists():
            return candidate
        candidate = candidate.parent
    return _PROJECT_ROOT


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    """Load and merge application configuration.

    Args:
        config_path: Explicit path to a TOML config file. Defaults to
            ``<project_root>/config/default.toml``.

    Returns:
        Fully validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: If the specified ``config_path`` does not exist.
        pydantic.ValidationError: If merged config values fail validation.
    """
    root = _find_project_root()

    load_dotenv(dotenv_path=root / ".env", override=False)

    if config_path is None:
        config_path = root / "config" / "default.toml"

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            "Create config/default.toml or pass --config."
        )

    with open(config_path, "rb") as f:
        raw: dict[str, Any] = tomllib.load(f)

    local_config_path = config_path.parent / "local.toml"
    if local_config_path.exists():
        with open(local_config_path, "rb") as f:
            local_raw: dict[str, Any] = tomllib.load(f)
        raw = _deep_merge(raw, local_raw)

    raw = _apply_env_overrides(raw)

    return _build_app_config(raw)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into ``base``."""
    result = dict(base)
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    """Apply ENSEMBLE_TRACKER_* env vars to the raw config dict.

    Supported overrides:
      ENSEMBLE_TRACKER_DB_PATH         → raw["database"]["db_path"]
      ENSEMBLE_TRACKER_LOG_LEVEL       → raw["logging"]["level"]
      ENSEMBLE_TRACKER_MODEL_BASE_URL  → raw["ensemble"]["base_url"]
      ENSEMBLE_TRACKER_DEBUG           → raw["debug"]
    """
    if db_path := os.environ.get("ENSEMBLE_TRACKER_DB_PATH"):
        raw.setdefault("database", {})["db_path"] = db_path

    if log_level := os.environ.get("ENSEMBLE_TRACKER_LOG_LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level

    if base_url := os.environ.get("ENSEMBLE_TRACKER_MODEL_BASE_URL"):
        raw.setdefault("ensemble", {})["base_url"] = base_url

    if debug := os.environ.get("ENSEMBLE_TRACKER_DEBUG"):
        raw["debug"] = debug.lower() in ("1", "true", "yes")

    return raw


def _build_app_config(raw: dict[str, Any]) -> AppConfig:
    """Map raw TOML dict to ``AppConfig`` model structure."""
    project = raw.pop("project", {})

    ensemble_raw = dict(raw.get("ensemble", {}))
    if "models" in ensemble_raw:
        ensemble_raw["models"] = [
            ModelEndpointConfig(**m) for m in ensemble_raw["models"]
        ]

    return AppConfig(
        database=DatabaseConfig(**raw.get("database", {})),
        ensemble=EnsembleConfig(**ensemble_raw),
        tracking=TrackingConfig(**raw.get("tracking", {})),
        health=HealthConfig(**raw.get("health", {})),
        peers=PeerConfig(**raw.get("peers", {})),
        logging=LoggingConfig(**raw.get("logging", {})),
        debug=raw.get("debug", project.get("debug", False)),
    )
