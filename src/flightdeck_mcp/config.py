"""
Configuration handling for Flightdeck MCP.

Supports loading configuration from:
1. A YAML config file (FLIGHTDECK_CONFIG_PATH)
2. Environment variables (FLIGHTDECK_*)
"""

import os
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml

from .error_handling import validate_api_key_id, validate_issuer_id, validate_team_id


@dataclass
class Timeouts:
    """Timeouts (seconds) for every blocking external call."""

    credential_store: int = 60
    archive: int = 900
    export: int = 300
    introspection: int = 30
    processing_wait: int = 600
    processing_poll_interval: int = 30
    upload: int = 1800
    http: float = 30.0

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "Timeouts":
        """Build from a mapping, ignoring unknown keys."""
        data = data or {}
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def _default_data_dir() -> Path:
    """Get the default data directory."""
    if os.name == "nt":
        base = Path(os.environ.get("LOCALAPPDATA", "~"))
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", "~/.local/share"))
    return base.expanduser() / "flightdeck-mcp"


@dataclass
class FlightdeckConfig:
    """Configuration for a team's release pipeline.

    Attributes:
        team_id: Apple Developer team ID
        credentials_root: Directory holding one sub-directory per team
            (AuthKey_*.p8, certificates/, profiles/, config.env)
        api_key_id: App Store Connect API key ID
        api_issuer_id: App Store Connect issuer ID
        api_key_path: Path to the AuthKey .p8 file
        p12_password: Shared import password for exported certificates
        data_dir: Where deployment history and keychains are kept
        api_base_url: App Store Connect API base URL
        timeouts: Timeouts for external calls
    """
    team_id: str
    credentials_root: Path = field(default_factory=lambda: Path.cwd() / "apple_info")
    api_key_id: Optional[str] = None
    api_issuer_id: Optional[str] = None
    api_key_path: Optional[Path] = None
    p12_password: Optional[str] = None
    data_dir: Path = field(default_factory=_default_data_dir)
    api_base_url: str = "https://api.appstoreconnect.apple.com"
    timeouts: Timeouts = field(default_factory=Timeouts)

    @property
    def team_dir(self) -> Path:
        """Directory with this team's credentials."""
        return self.credentials_root / self.team_id

    @property
    def history_dir(self) -> Path:
        return self.data_dir / "deployments"

    @property
    def keychain_dir(self) -> Path:
        return self.data_dir / "keychains"

    @property
    def has_api_credentials(self) -> bool:
        """Whether App Store Connect API credentials are configured."""
        return bool(self.api_key_id and self.api_issuer_id and self.api_key_path)

    @classmethod
    def from_config_file(cls, config_path: str) -> "FlightdeckConfig":
        """Load configuration from a YAML file.

        Args:
            config_path: Path to the configuration file

        Returns:
            FlightdeckConfig instance
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        api = data.get("app_store_connect", {}) or {}
        return cls(
            team_id=data.get("team_id", ""),
            credentials_root=Path(data.get("credentials_root", Path.cwd() / "apple_info")).expanduser(),
            api_key_id=api.get("key_id"),
            api_issuer_id=api.get("issuer_id"),
            api_key_path=Path(api["key_path"]).expanduser() if api.get("key_path") else None,
            p12_password=data.get("p12_password"),
            data_dir=Path(data["data_dir"]).expanduser() if data.get("data_dir") else _default_data_dir(),
            api_base_url=api.get("base_url", "https://api.appstoreconnect.apple.com"),
            timeouts=Timeouts.from_dict(data.get("timeouts")),
        )

    @classmethod
    def from_env(cls) -> "FlightdeckConfig":
        """Load configuration from environment variables.

        Environment variables:
            FLIGHTDECK_TEAM_ID: Apple Developer team ID
            FLIGHTDECK_CREDENTIALS_ROOT: Directory with per-team credentials
            FLIGHTDECK_API_KEY_ID: App Store Connect API key ID
            FLIGHTDECK_API_ISSUER_ID: App Store Connect issuer ID
            FLIGHTDECK_API_KEY_PATH: Path to the AuthKey .p8 file
            FLIGHTDECK_P12_PASSWORD: Shared certificate import password
            FLIGHTDECK_DATA_DIR: History and keychain directory
        """
        key_path = os.environ.get("FLIGHTDECK_API_KEY_PATH")
        data_dir = os.environ.get("FLIGHTDECK_DATA_DIR")
        return cls(
            team_id=os.environ.get("FLIGHTDECK_TEAM_ID", ""),
            credentials_root=Path(
                os.environ.get("FLIGHTDECK_CREDENTIALS_ROOT", str(Path.cwd() / "apple_info"))
            ).expanduser(),
            api_key_id=os.environ.get("FLIGHTDECK_API_KEY_ID"),
            api_issuer_id=os.environ.get("FLIGHTDECK_API_ISSUER_ID"),
            api_key_path=Path(key_path).expanduser() if key_path else None,
            p12_password=os.environ.get("FLIGHTDECK_P12_PASSWORD"),
            data_dir=Path(data_dir).expanduser() if data_dir else _default_data_dir(),
        )

    def with_team(self, team_id: str) -> "FlightdeckConfig":
        """Return a copy targeting another team."""
        return replace(self, team_id=team_id)

    def validate(self) -> list[str]:
        """Validate the configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        try:
            validate_team_id(self.team_id)
        except ValueError as e:
            errors.append(str(e))

        configured = [self.api_key_id, self.api_issuer_id, self.api_key_path]
        if any(configured) and not all(configured):
            errors.append(
                "App Store Connect credentials are incomplete: "
                "key_id, issuer_id and key_path are all required"
            )
        if self.api_key_id:
            try:
                validate_api_key_id(self.api_key_id)
            except ValueError as e:
                errors.append(str(e))
        if self.api_issuer_id:
            try:
                validate_issuer_id(self.api_issuer_id)
            except ValueError as e:
                errors.append(str(e))
        if self.api_key_path and not self.api_key_path.exists():
            errors.append(f"API key file not found: {self.api_key_path}")

        return errors


def load_config(team_id: Optional[str] = None) -> FlightdeckConfig:
    """Load configuration from the best available source.

    Priority:
    1. FLIGHTDECK_CONFIG_PATH environment variable
    2. Individual FLIGHTDECK_* environment variables

    Args:
        team_id: Overrides the configured team ID

    Returns:
        FlightdeckConfig instance

    Raises:
        ValueError: If no configuration is found
    """
    config_path = os.environ.get("FLIGHTDECK_CONFIG_PATH")
    if config_path:
        config = FlightdeckConfig.from_config_file(config_path)
    elif os.environ.get("FLIGHTDECK_TEAM_ID") or team_id:
        config = FlightdeckConfig.from_env()
    else:
        raise ValueError(
            "No Flightdeck configuration found. Set FLIGHTDECK_CONFIG_PATH "
            "to a YAML config file, or set FLIGHTDECK_TEAM_ID and the "
            "FLIGHTDECK_API_* environment variables."
        )

    if team_id:
        config = config.with_team(team_id)
    return config


def generate_deployment_id(team_id: str, app_identifier: str) -> str:
    """Generate a unique deployment ID.

    Format: DEPLOY_{TEAM}_{APP4}_{YYYYmmdd_HHMMSS}_{HEX6}
    """
    app_short = app_identifier.rsplit(".", 1)[-1][:4].upper() or "APP"
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"DEPLOY_{team_id}_{app_short}_{timestamp}_{secrets.token_hex(3).upper()}"
