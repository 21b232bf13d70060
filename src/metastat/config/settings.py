"""Configuration management using Pydantic Settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="METASTAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # Logging
    log_level: str = Field("INFO")
    log_format: str = Field("json", pattern="^(json|text)$")

    # Confidence intervals (two-sided 95%)
    z_critical: float = Field(1.96, gt=0)

    # Effect sizes
    continuity_correction: float = Field(0.5, gt=0)
    variance_ratio_limit: float = Field(2.0, gt=1)

    # Model selection for model="auto"
    auto_random_i_squared: float = Field(50.0, ge=0, le=100)
    auto_random_q_pvalue: float = Field(0.10, gt=0, lt=1)

    # Heterogeneity
    prediction_min_studies: int = Field(3, ge=3)

    # Publication bias
    bias_min_studies: int = Field(10, ge=3)
    bias_alpha: float = Field(0.10, gt=0, lt=1)
    bias_strong_alpha: float = Field(0.01, gt=0, lt=1)
    funnel_contour_points: int = Field(10, ge=2, le=200)


# Instantiate default settings
settings = Settings()
