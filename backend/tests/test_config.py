"""Tests for application configuration."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from packetflow.config import (
    DOLLARS_PER_CREDIT,
    ProcessingConfig,
    Settings,
    credits_per_page,
    estimate_cost,
)


class TestSettings:
    def test_default_settings(self):
        """Test that settings are loaded and have expected types."""
        settings = Settings()

        assert isinstance(settings.document_api_base_url, str)
        assert settings.stream_inactivity_timeout == 60.0
        assert settings.job_poll_interval == 2.0
        assert settings.job_poll_max_attempts == 120
        assert "sqlite" in settings.database_url
        assert "aiosqlite" in settings.database_url

    def test_settings_from_env(self):
        """Test settings loaded from environment variables."""
        with patch.dict(os.environ, {
            "DOCUMENT_API_BASE_URL": "http://proxy.local/v1",
            "RETRY_MAX_ATTEMPTS": "7",
            "DEFAULT_MODEL": "retab-large",
        }):
            settings = Settings()

        assert settings.document_api_base_url == "http://proxy.local/v1"
        assert settings.retry_max_attempts == 7
        assert settings.default_processing_config().model == "retab-large"

    def test_settings_model_config(self):
        """Test settings model configuration."""
        assert Settings.model_config.get("env_file") == ".env"
        assert Settings.model_config.get("case_sensitive") is False

    def test_retry_config_keys(self):
        config = Settings().get_retry_config()
        assert set(config) == {
            "max_attempts", "base_delay", "multiplier", "max_delay", "jitter",
            "rate_limit_base_delay", "rate_limit_max_delay",
        }


class TestProcessingConfig:
    def test_overrides_do_not_mutate_defaults(self):
        defaults = ProcessingConfig()
        run = defaults.with_overrides(model="retab-large", n_consensus=3, concurrency=None)

        assert run.model == "retab-large"
        assert run.n_consensus == 3
        assert run.concurrency == defaults.concurrency
        assert defaults.model == "retab-small"
        assert defaults.n_consensus == 1

    def test_rejects_out_of_range_values(self):
        with pytest.raises(ValidationError):
            ProcessingConfig(n_consensus=6)
        with pytest.raises(ValidationError):
            ProcessingConfig(concurrency=0)
        with pytest.raises(ValidationError):
            ProcessingConfig().with_overrides(concurrency=11)

    def test_rejects_unknown_model(self):
        with pytest.raises(ValidationError):
            ProcessingConfig(model="gpt-unknown")

    def test_consensus_raises_zero_temperature(self):
        assert ProcessingConfig(n_consensus=3, temperature=0.0).effective_temperature == 0.1
        assert ProcessingConfig(n_consensus=3, temperature=0.5).effective_temperature == 0.5
        assert ProcessingConfig(n_consensus=1, temperature=0.0).effective_temperature == 0.0


class TestCost:
    def test_credits_per_page(self):
        assert credits_per_page("retab-micro") == 0.2
        assert credits_per_page("retab-small") == 1.0
        assert credits_per_page("retab-large") == 3.0

    def test_estimate_multiplies_extract_by_consensus(self):
        estimate = estimate_cost(10, ProcessingConfig(model="retab-large", n_consensus=3))

        assert estimate["split_credits"] == pytest.approx(30.0)
        assert estimate["extract_credits"] == pytest.approx(90.0)
        assert estimate["total_credits"] == pytest.approx(120.0)
        assert estimate["total_cost"] == pytest.approx(120.0 * DOLLARS_PER_CREDIT)
        assert estimate["per_page_credits"] == pytest.approx(12.0)

    def test_cost_optimized_split(self):
        config = ProcessingConfig(model="retab-large", image_dpi=300, cost_optimize=True)
        assert config.split_model == "retab-micro"
        assert config.split_image_dpi == 150
        assert ProcessingConfig(image_dpi=96, cost_optimize=True).split_image_dpi == 96
        assert ProcessingConfig(model="retab-large").split_model == "retab-large"

        estimate = estimate_cost(10, config)
        assert estimate["split_credits"] == pytest.approx(2.0)
        assert estimate["extract_credits"] == pytest.approx(30.0)

    def test_estimate_zero_pages(self):
        estimate = estimate_cost(0)
        assert estimate["total_credits"] == 0
        assert estimate["per_page_cost"] == 0.0
