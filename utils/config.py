"""
Configuration management.
"""

import os
from dataclasses import dataclass, field
from typing import List


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Config:
    """
    Application configuration.

    Loads from environment variables with sensible defaults.
    """

    # Server
    host: str = field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8000")))
    debug: bool = field(default_factory=lambda: os.getenv("DEBUG", "false").lower() == "true")
    production: bool = field(
        default_factory=lambda: os.getenv("PRODUCTION", "false").lower() == "true"
    )
    allowed_origins: List[str] = field(default_factory=lambda: _env_list("ALLOWED_ORIGINS"))

    # Database
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./data/appraisor.db")
    )
    database_pool_size: int = field(
        default_factory=lambda: int(os.getenv("DATABASE_POOL_SIZE", "20"))
    )
    database_max_overflow: int = field(
        default_factory=lambda: int(os.getenv("DATABASE_MAX_OVERFLOW", "10"))
    )
    database_pool_timeout: int = field(
        default_factory=lambda: int(os.getenv("DATABASE_POOL_TIMEOUT", "2"))
    )
    database_pool_recycle: int = field(
        default_factory=lambda: int(os.getenv("DATABASE_POOL_RECYCLE", "1800"))
    )
    database_echo: bool = field(
        default_factory=lambda: os.getenv("DATABASE_ECHO", "false").lower() == "true"
    )

    # Upstream APIs
    openai_api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    openai_model: str = field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o"))
    google_maps_api_key: str = field(
        default_factory=lambda: os.getenv("GOOGLE_MAPS_API_KEY", "")
    )
    street_api_key: str = field(default_factory=lambda: os.getenv("STREET_API_KEY", ""))
    ideal_postcodes_api_key: str = field(
        default_factory=lambda: os.getenv("IDEAL_POSTCODES_API_KEY", "")
    )
    request_timeout: int = field(default_factory=lambda: int(os.getenv("REQUEST_TIMEOUT", "30")))

    # Comparables
    size_tolerance_percent: float = field(
        default_factory=lambda: float(os.getenv("SIZE_TOLERANCE_PERCENT", "10"))
    )
    comparables_per_bucket: int = field(
        default_factory=lambda: int(os.getenv("COMPARABLES_PER_BUCKET", "10"))
    )
    min_similarity_score: float = field(
        default_factory=lambda: float(os.getenv("MIN_SIMILARITY_SCORE", "80"))
    )
    final_comparables_count: int = field(
        default_factory=lambda: int(os.getenv("FINAL_COMPARABLES_COUNT", "3"))
    )
    candidates_per_request: int = field(
        default_factory=lambda: int(os.getenv("CANDIDATES_PER_REQUEST", "5"))
    )

    # Data
    data_dir: str = field(default_factory=lambda: os.getenv("DATA_DIR", "./data"))
    refurbishment_costs_path: str = field(
        default_factory=lambda: os.getenv(
            "REFURBISHMENT_COSTS_PATH",
            os.path.join(os.path.dirname(os.path.dirname(__file__)), "core", "data", "refurbishment_costs.json"),
        )
    )

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment."""
        return cls()

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def to_dict(self) -> dict:
        """Convert config to dictionary. API keys are reported as present/absent only."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "production": self.production,
            "allowed_origins": list(self.allowed_origins),
            "database_echo": self.database_echo,
            "openai_model": self.openai_model,
            "openai_configured": bool(self.openai_api_key),
            "google_maps_configured": bool(self.google_maps_api_key),
            "street_api_configured": bool(self.street_api_key),
            "ideal_postcodes_configured": bool(self.ideal_postcodes_api_key),
            "request_timeout": self.request_timeout,
            "size_tolerance_percent": self.size_tolerance_percent,
            "comparables_per_bucket": self.comparables_per_bucket,
            "min_similarity_score": self.min_similarity_score,
            "final_comparables_count": self.final_comparables_count,
            "candidates_per_request": self.candidates_per_request,
            "data_dir": self.data_dir,
        }
