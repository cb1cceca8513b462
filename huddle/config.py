"""Configuration for Huddle with validation."""

from pathlib import Path
from typing import Optional

import structlog
import toml
from pydantic import BaseModel, ConfigDict, Field, field_validator

log = structlog.get_logger()

# Upper bound for a single team avatar upload
DEFAULT_MAX_AVATAR_BYTES = 5 * 1024 * 1024


class HuddleConfig(BaseModel):
    """Main configuration for Huddle with validation."""

    model_config = ConfigDict(validate_assignment=True)

    # Paths
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".huddle")
    db_path: Optional[Path] = None  # Computed from data_dir if None
    asset_dir: Optional[Path] = None  # Computed from data_dir if None

    # Assets
    asset_url_prefix: str = "/assets"
    max_avatar_bytes: int = Field(gt=0, default=DEFAULT_MAX_AVATAR_BYTES)

    # Concurrency
    lock_timeout_seconds: float = Field(gt=0, default=5.0)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR)$")
    log_file: Optional[Path] = None
    json_logs: bool = False

    @field_validator("asset_url_prefix")
    @classmethod
    def strip_trailing_slash(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("asset_url_prefix cannot be empty")
        return v.rstrip("/") or "/"

    def model_post_init(self, __context):
        """Set computed values after initialization."""
        self.data_dir = Path(self.data_dir).expanduser()
        self.data_dir.mkdir(parents=True, exist_ok=True)

        if self.db_path is None:
            self.db_path = self.data_dir / "huddle.db"

        if self.asset_dir is None:
            self.asset_dir = self.data_dir / "assets"

    @classmethod
    def load(cls, path: Optional[str] = None) -> "HuddleConfig":
        """Load configuration from TOML file.

        Search order if path not provided:
        1. ./huddle.toml (deployment-specific)
        2. ~/.huddle/config.toml (user default)

        Args:
            path: Optional explicit config file path

        Returns:
            HuddleConfig instance
        """
        if path is None:
            candidates = [
                Path("huddle.toml"),
                Path("~/.huddle/config.toml").expanduser(),
            ]
            for candidate in candidates:
                if candidate.exists():
                    path = str(candidate)
                    log.info("config_found", path=path)
                    break

        if path and Path(path).exists():
            try:
                data = toml.load(path)
            except (toml.TomlDecodeError, OSError) as e:
                log.error("config_load_failed", path=path, error=str(e))
                return cls()

            log.info("config_loaded", path=path)
            return cls(**data)

        log.info("config_using_defaults")
        return cls()

    def save(self, path: str):
        """Save configuration to TOML file.

        Args:
            path: File path to save to
        """
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            data = self.model_dump(mode="json", exclude_none=True)
            toml.dump(data, f)
        log.info("config_saved", path=path)


def validate_config(config: HuddleConfig) -> list[str]:
    """Validate configuration and return warnings.

    Args:
        config: Config to validate

    Returns:
        List of warning messages
    """
    warnings = []

    if config.max_avatar_bytes > 50 * 1024 * 1024:
        warnings.append(
            f"max_avatar_bytes is very large ({config.max_avatar_bytes} bytes); "
            "avatars are held in memory while hashing"
        )

    if config.lock_timeout_seconds > 60:
        warnings.append(
            f"lock_timeout_seconds ({config.lock_timeout_seconds}s) lets busy "
            "requests queue for over a minute"
        )

    # Check data directory is writable
    try:
        config.data_dir.mkdir(parents=True, exist_ok=True)
        test_file = config.data_dir / ".write_test"
        test_file.touch()
        test_file.unlink()
    except OSError as e:
        warnings.append(f"Data directory not writable: {e}")

    return warnings
