"""
Process-wide settings for cdcat.

Run-level options (item selection rule, test length, priors, ...) live on
``CDCATConfig`` in ``cdcat.core.cat.runner``; the values here only provide
defaults and control logging.
"""

from typing import Literal, Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ITEM_SELECTION_RULES = ("GDI", "JSD", "MPWKL", "PWKL", "NPS", "random")


class Settings(BaseSettings):
    """Settings loaded from ``CDCAT_*`` environment variables or a .env file."""

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["text", "json"] = "text"

    # Defaults for a CD-CAT run
    DEFAULT_ITEM_SELECTION: str = "GDI"
    DEFAULT_MAX_ITEMS: int = Field(default=20, ge=1)
    DEFAULT_PRECISION_CUT: float = Field(
        default=0.80,
        gt=0.0,
        le=1.0,
        description="MAP (or attribute pseudo-posterior) probability needed to stop early",
    )
    DEFAULT_N_WORKERS: int = Field(default=2, ge=1)

    # Progress is logged every N completed examinees when print_progress is on
    PROGRESS_LOG_EVERY: int = Field(default=100, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="CDCAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_item_selection(self) -> Self:
        """DEFAULT_ITEM_SELECTION must name a known rule."""
        if self.DEFAULT_ITEM_SELECTION not in ITEM_SELECTION_RULES:
            raise ValueError(
                f"DEFAULT_ITEM_SELECTION must be one of {list(ITEM_SELECTION_RULES)}, "
                f"got '{self.DEFAULT_ITEM_SELECTION}'"
            )
        return self


settings = Settings()
