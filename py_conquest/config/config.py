from pathlib import Path
from dotenv import dotenv_values
from pydantic import Field
from pydantic_settings import BaseSettings

import os

# Explicitly load .env for local/dev environments only if values are missing from the environment
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_file = BASE_DIR / ".env"

if env_file.exists():
    file_env = dotenv_values(env_file)
    missing_keys = {k: v for k, v in file_env.items() if k not in os.environ and v is not None}
    for k, v in missing_keys.items():
        os.environ[k] = v


class Settings(BaseSettings):
    """Application settings pulled from environment variables."""

    # Database Configuration
    database_url: str = Field(default="sqlite:///conquest.db", description="SQLAlchemy database URL")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Logging format (e.g., plain, json)")

    # Game Rules
    influence_radius_km: float = Field(default=0.5, gt=0, description="Sphere of influence radius in km")
    max_chains_per_day: int = Field(default=2, ge=0, description="Permanent chains allowed per day")
    min_path_length: int = Field(default=2, ge=1, description="Minimum recorded points for a chain")
    timezone: str = Field(default="UTC", description="Timezone used to roll over the daily quota")

    # Position Sampling
    min_walking_speed_mps: float = Field(default=0.0, ge=0, description="Samples slower than this are jitter (0 disables)")
    max_walking_speed_mps: float = Field(default=5.0, gt=0, description="Samples faster than this are cheating")
    sampler_throttle_seconds: float = Field(default=1.0, ge=0, description="Minimum interval between forwarded samples")

    # Chain Attempt
    attempt_expiry_days: float = Field(default=3.0, gt=0, description="Age after which an unfinished walk is discarded")
    attempt_persist_every: int = Field(default=10, ge=1, description="Persist the walk every N points")

    # Multiplayer / Sync
    sync_debounce_seconds: float = Field(default=2.0, ge=0, description="Quiet period before uploading local changes")
    territory_sync_debounce_seconds: float = Field(default=5.0, ge=0, description="Quiet period before uploading the territory area")
    conflict_debounce_seconds: float = Field(default=2.0, ge=0, description="Quiet period before re-fetching peers")
    conflict_refresh_seconds: float = Field(default=30.0, gt=0, description="Periodic peer refresh interval")

    # Territory
    territory_strategy: str = Field(default="convex_hull", description="convex_hull or loop_closure")
    territory_simplify_tolerance: float = Field(default=0.0001, ge=0, description="Hull simplification in degrees")
    loop_close_distance_m: float = Field(default=25.0, gt=0, description="Distance to start that closes a loop")
    loop_min_points: int = Field(default=8, ge=4, description="Points needed before a loop may close at its start")
    loop_check_min_points: int = Field(default=5, ge=3, description="Points needed before loop checks run")
    boundary_snap_distance_m: float = Field(default=15.0, gt=0, description="Distance to a captured boundary that closes a loop")
    min_capture_area_m2: float = Field(default=50.0, ge=0, description="Smallest capturable loop area")
    capture_cooldown_seconds: float = Field(default=2.0, ge=0, description="Minimum time between capture attempts")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "CONQUEST_"
        extra = "ignore"


# Instantiate singleton settings object
settings = Settings()
