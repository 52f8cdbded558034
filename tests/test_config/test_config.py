"""Tests for ensemble_tracker/config.py: layering, env overrides and validation."""

from __future__ import annotations

import pydantic
import pytest

from ensemble_tracker.config import (
    AppConfig,
    EnsembleConfig,
    HealthConfig,
    ModelEndpointConfig,
    PeerConfig,
    TrackingConfig,
    load_config,
)

TOML = """
[database]
db_path = "data/db/custom.db"

[ensemble]
base_url = "http://gpu-box:11434"
timeout_seconds = 12.0

[[ensemble.models]]
model_id = "alpha"
endpoint = "alpha:1"

[[ensemble.models]]
model_id = "beta"
endpoint = "beta:1"
enabled = false

[tracking]
tolerance_pct = 0.5
default_time_horizon = "4w"

[logging]
level = "debug"
"""


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "ENSEMBLE_TRACKER_DB_PATH",
        "ENSEMBLE_TRACKER_LOG_LEVEL",
        "ENSEMBLE_TRACKER_MODEL_BASE_URL",
        "ENSEMBLE_TRACKER_DEBUG",
    ):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_default_config_is_valid(self):
        config = AppConfig()
        assert config.tracking.tolerance_pct == 1.0
        assert config.ensemble.priority == ["llama3-8b", "mistral-7b-instruct", "codellama-13b"]
        assert config.health.return_weight == 0.5

    def test_committed_default_toml_loads(self):
        config = load_config()
        assert config.database.db_path.endswith("ensemble_tracker.db")
        assert len(config.ensemble.models) == 3


class TestLoadConfig:
    def test_toml_values(self, tmp_path):
        path = tmp_path / "default.toml"
        path.write_text(TOML, encoding="utf-8")
        config = load_config(path)
        assert config.database.db_path == "data/db/custom.db"
        assert config.ensemble.base_url == "http://gpu-box:11434"
        assert config.ensemble.priority == ["alpha", "beta"]
        assert config.ensemble.models[1].enabled is False
        assert config.tracking.default_time_horizon == "4w"
        assert config.logging.level == "DEBUG"

    def test_local_override_merges(self, tmp_path):
        (tmp_path / "default.toml").write_text(TOML, encoding="utf-8")
        (tmp_path / "local.toml").write_text("[tracking]\ntolerance_pct = 2.0\n", encoding="utf-8")
        config = load_config(tmp_path / "default.toml")
        assert config.tracking.tolerance_pct == 2.0
        assert config.tracking.default_time_horizon == "4w"

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "default.toml"
        path.write_text(TOML, encoding="utf-8")
        monkeypatch.setenv("ENSEMBLE_TRACKER_DB_PATH", "/tmp/env.db")
        monkeypatch.setenv("ENSEMBLE_TRACKER_MODEL_BASE_URL", "http://other:1")
        monkeypatch.setenv("ENSEMBLE_TRACKER_DEBUG", "yes")
        config = load_config(path)
        assert config.database.db_path == "/tmp/env.db"
        assert config.ensemble.base_url == "http://other:1"
        assert config.debug is True

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.toml")


class TestValidation:
    def test_thresholds_ordered(self):
        with pytest.raises(pydantic.ValidationError):
            EnsembleConfig(high_confidence=0.5, medium_confidence=0.7)

    def test_duplicate_model_ids(self):
        with pytest.raises(pydantic.ValidationError):
            EnsembleConfig(models=[
                ModelEndpointConfig(model_id="a", endpoint="a"),
                ModelEndpointConfig(model_id="a", endpoint="b"),
            ])

    def test_non_positive_model_timeout(self):
        with pytest.raises(pydantic.ValidationError):
            ModelEndpointConfig(model_id="a", endpoint="a", timeout_seconds=0)

    def test_health_weights_must_sum_to_one(self):
        with pytest.raises(pydantic.ValidationError):
            HealthConfig(return_weight=0.5, follow_weight=0.5, diversification_weight=0.5)

    def test_bad_horizon(self):
        with pytest.raises(pydantic.ValidationError):
            TrackingConfig(default_time_horizon="forever")

    def test_negative_tolerance(self):
        with pytest.raises(pydantic.ValidationError):
            TrackingConfig(tolerance_pct=-1)

    def test_top_fraction_range(self):
        with pytest.raises(pydantic.ValidationError):
            PeerConfig(top_fraction=0)
