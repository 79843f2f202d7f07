"""Configuration management for the delivery engine."""

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RankingWeights(BaseModel):
    """Relative weight of each ranking factor."""

    model_config = ConfigDict(frozen=True)

    distance: float = Field(default=0.35, ge=0)
    rating: float = Field(default=0.25, ge=0)
    experience: float = Field(default=0.20, ge=0)
    workload: float = Field(default=0.15, ge=0)
    vehicle: float = Field(default=0.05, ge=0)

    @property
    def total(self) -> float:
        return self.distance + self.rating + self.experience + self.workload + self.vehicle


class DispatchPolicy(BaseModel):
    """
    Dispatch policy knobs.

    Built once from settings and handed to the locator, ranking engine,
    orchestrator, lifecycle machine and sweeper at construction time.
    """

    model_config = ConfigDict(frozen=True)

    # Candidate search
    max_search_radius_km: float = Field(default=15.0, gt=0)
    priority_radius_km: float = Field(default=5.0, ge=0)
    max_active_deliveries: int = Field(default=3, ge=1)

    # Ranking
    min_rider_rating: float = Field(default=3.0, ge=0, lt=5)
    min_assignment_score: float = Field(default=60.0, ge=0, le=100)
    alternates_count: int = Field(default=3, ge=0)
    weights: RankingWeights = Field(default_factory=RankingWeights)
    strict_vehicle_requirement: bool = Field(
        default=True,
        description="Score 0 on an unmet vehicle requirement instead of penalizing",
    )
    vehicle_penalty_factor: float = Field(default=0.5, ge=0, le=1)

    # Offer window
    acceptance_window_seconds: int = Field(default=180, gt=0)
    reassign_on_decline: bool = True
    reassign_on_expiry: bool = True

    # Estimates
    vehicle_speeds_kmh: dict[str, float] = Field(
        default_factory=lambda: {
            "foot": 5.0,
            "bicycle": 15.0,
            "motorcycle": 30.0,
            "car": 25.0,
            "van": 20.0,
        }
    )
    default_speed_kmh: float = Field(default=25.0, gt=0)
    prep_minutes: int = Field(default=15, ge=0)
    handover_minutes: int = Field(default=5, ge=0)

    # Urgency
    high_urgency_age_minutes: int = 120
    medium_urgency_age_minutes: int = 60
    high_value_threshold: Decimal = Decimal("100000")
    medium_value_threshold: Decimal = Decimal("50000")
    premium_fee_threshold: Decimal = Decimal("5000")

    # Economics
    min_security_deposit: Decimal = Decimal("70000")
    base_delivery_fee: Decimal = Decimal("300")
    fee_per_km: Decimal = Decimal("50")
    platform_fee_rate: Decimal = Field(default=Decimal("0.20"), ge=0, le=1)
    min_rider_payment: Decimal = Decimal("500")

    @model_validator(mode="after")
    def validate_consistency(self) -> "DispatchPolicy":
        """Reject radii or weights that would make scoring meaningless."""
        if self.priority_radius_km >= self.max_search_radius_km:
            raise ValueError("priority_radius_km must be below max_search_radius_km")
        if abs(self.weights.total - 1.0) > 1e-6:
            raise ValueError(f"ranking weights must sum to 1.0, got {self.weights.total}")
        if self.medium_urgency_age_minutes > self.high_urgency_age_minutes:
            raise ValueError("medium urgency age cannot exceed high urgency age")
        return self

    def speed_for(self, vehicle_type: str) -> float:
        """Average speed in km/h for a vehicle type."""
        return self.vehicle_speeds_kmh.get(vehicle_type, self.default_speed_kmh)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Redis Configuration
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")
    transaction_retries: int = Field(
        default=5, ge=1, description="Optimistic transaction attempts before giving up"
    )

    # API Configuration
    api_port: int = Field(default=8000, description="API server port")
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_workers: int = Field(default=4, description="Number of API workers")

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "text"] = Field(default="json", description="Log format")

    # Expiry sweeper
    sweeper_enabled: bool = Field(default=True, description="Run the expiry sweeper")
    sweep_interval_seconds: float = Field(
        default=60.0, gt=0, description="Seconds between expiry sweeps"
    )
    sweep_batch_size: int = Field(
        default=100, ge=1, description="Max expired offers handled per sweep"
    )

    # Dispatch policy, overridable as DISPATCH__<FIELD>
    dispatch: DispatchPolicy = Field(default_factory=DispatchPolicy)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v_upper


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
