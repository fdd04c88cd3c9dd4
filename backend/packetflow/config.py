from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Model table: credits per page. One credit costs DOLLARS_PER_CREDIT.
MODEL_CREDITS_PER_PAGE: Dict[str, float] = {
    "retab-micro": 0.2,
    "retab-small": 1.0,
    "retab-large": 3.0,
}
DEFAULT_MODEL = "retab-small"
DOLLARS_PER_CREDIT = 0.01

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 10

# Cost-optimized runs split on the cheapest model at a capped resolution
COST_OPTIMIZED_SPLIT_MODEL = "retab-micro"
COST_OPTIMIZED_SPLIT_DPI = 150


def credits_per_page(model: str) -> float:
    """Credits charged per page for a model (unknown models bill like retab-small)."""
    return MODEL_CREDITS_PER_PAGE.get(model, MODEL_CREDITS_PER_PAGE[DEFAULT_MODEL])


class ProcessingConfig(BaseModel):
    """
    Per-run processing options.

    Instances are immutable in practice: use `with_overrides` to derive a
    configuration for one run without touching the defaults it came from.
    """

    model: str = DEFAULT_MODEL
    n_consensus: int = Field(default=1, ge=1, le=5)
    image_dpi: int = Field(default=192, ge=72, le=600)
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    concurrency: int = Field(default=5, ge=MIN_CONCURRENCY, le=MAX_CONCURRENCY)
    classify: bool = True
    first_n_pages: Optional[int] = Field(default=3, ge=1)
    use_jobs: bool = False
    stream: bool = False
    chunking: bool = False
    cost_optimize: bool = False
    source_quotes: bool = False
    reasoning_prompts: bool = False

    @field_validator("model")
    @classmethod
    def check_model(cls, v: str) -> str:
        if v not in MODEL_CREDITS_PER_PAGE:
            raise ValueError(f"Unknown model '{v}'. Available: {', '.join(MODEL_CREDITS_PER_PAGE)}")
        return v

    def with_overrides(self, **overrides: Any) -> "ProcessingConfig":
        """Return a validated copy with the given options replaced."""
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return ProcessingConfig(**values)

    @property
    def effective_temperature(self) -> float:
        if self.n_consensus > 1 and self.temperature < 0.01:
            return 0.1
        return self.temperature

    @property
    def split_model(self) -> str:
        return COST_OPTIMIZED_SPLIT_MODEL if self.cost_optimize else self.model

    @property
    def split_image_dpi(self) -> int:
        if self.cost_optimize:
            return min(self.image_dpi, COST_OPTIMIZED_SPLIT_DPI)
        return self.image_dpi


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Create a .env file in the backend directory to override defaults.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # History database
    database_url: str = "sqlite+aiosqlite:///./data/history.db"

    # Remote document API
    document_api_base_url: str = "https://api.retab.com/v1"
    document_api_timeout: float = 600.0
    stream_inactivity_timeout: float = 60.0

    # Async job polling
    job_poll_interval: float = 2.0
    job_poll_max_attempts: int = 120

    # Retry / backoff
    retry_max_attempts: int = 4
    retry_base_delay: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.25
    rate_limit_base_delay: float = 5.0
    rate_limit_max_delay: float = 60.0

    # Processing defaults
    default_model: str = DEFAULT_MODEL
    default_n_consensus: int = 1
    default_image_dpi: int = 192
    default_temperature: float = 0.0
    default_confidence_threshold: float = 0.7
    default_concurrency: int = 5

    # File storage
    data_dir: str = "./data"
    max_upload_bytes: int = 100 * 1024 * 1024

    log_level: str = "INFO"

    # Browser clients allowed by CORS
    cors_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    def default_processing_config(self) -> ProcessingConfig:
        """Build the default per-run processing configuration."""
        return ProcessingConfig(
            model=self.default_model,
            n_consensus=self.default_n_consensus,
            image_dpi=self.default_image_dpi,
            temperature=self.default_temperature,
            confidence_threshold=self.default_confidence_threshold,
            concurrency=self.default_concurrency,
        )

    def get_retry_config(self) -> dict:
        """Get retry/backoff configuration."""
        return {
            "max_attempts": self.retry_max_attempts,
            "base_delay": self.retry_base_delay,
            "multiplier": self.retry_multiplier,
            "max_delay": self.retry_max_delay,
            "jitter": self.retry_jitter,
            "rate_limit_base_delay": self.rate_limit_base_delay,
            "rate_limit_max_delay": self.rate_limit_max_delay,
        }


def estimate_cost(page_count: int, config: Optional[ProcessingConfig] = None) -> dict:
    """Estimate credits and dollars for splitting and extracting `page_count` pages."""
    config = config or ProcessingConfig()
    per_page = credits_per_page(config.model)

    split_credits = page_count * credits_per_page(config.split_model)
    extract_credits = page_count * per_page * max(1, config.n_consensus)
    total_credits = split_credits + extract_credits
    total_cost = total_credits * DOLLARS_PER_CREDIT

    return {
        "split_credits": split_credits,
        "extract_credits": extract_credits,
        "total_credits": total_credits,
        "total_cost": total_cost,
        "per_page_credits": total_credits / page_count if page_count else 0.0,
        "per_page_cost": total_cost / page_count if page_count else 0.0,
    }


settings = Settings()
