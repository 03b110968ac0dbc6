"""
Per-team credentials directory and its config.env descriptor.

Layout:
    <credentials_root>/<TEAM_ID>/
        AuthKey_<KEYID>.p8
        certificates/*.p12
        profiles/*.mobileprovision
        config.env
        backups/config.env.backup.<timestamp>

config.env records the shared P12 import password and the last
deployment so another team member can pick up the same credentials.
"""

import logging
import os
import re
import shutil
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..signing.models import utcnow

logger = logging.getLogger(__name__)

ENV_LINE = re.compile(r"^\s*([A-Z][A-Z0-9_]*)\s*=\s*(.*?)\s*$")


def default_import_password(app_identifier: str, now: Optional[datetime] = None) -> str:
    """'{APP_SHORT}_{YYYYmmdd_HHMMSS}!' where APP_SHORT drops 'com.' and the dots."""
    now = now or utcnow()
    short = re.sub(r"^com\.", "", app_identifier).replace(".", "")
    return f"{short}_{now.strftime('%Y%m%d_%H%M%S')}!"


@dataclass(frozen=True)
class CredentialsLayout:
    """Paths inside one team's credentials directory."""
    root: Path
    team_id: str

    @property
    def team_dir(self) -> Path:
        return Path(self.root) / self.team_id

    @property
    def certificates_dir(self) -> Path:
        return self.team_dir / "certificates"

    @property
    def profiles_dir(self) -> Path:
        return self.team_dir / "profiles"

    @property
    def config_file(self) -> Path:
        return self.team_dir / "config.env"

    @property
    def backups_dir(self) -> Path:
        return self.team_dir / "backups"

    def api_key_path(self, key_id: str) -> Path:
        return self.team_dir / f"AuthKey_{key_id}.p8"

    def find_api_key(self) -> Optional[Path]:
        """The first AuthKey_*.p8 in the team directory."""
        if not self.team_dir.is_dir():
            return None
        keys = sorted(self.team_dir.glob("AuthKey_*.p8"))
        return keys[0] if keys else None

    def ensure(self) -> "CredentialsLayout":
        """Create the directory tree."""
        for directory in (self.team_dir, self.certificates_dir, self.profiles_dir):
            directory.mkdir(parents=True, exist_ok=True)
        return self


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse KEY=value lines, ignoring comments and stripping quotes."""
    values: dict[str, str] = {}
    with open(path, "r") as f:
        for line in f:
            if line.lstrip().startswith("#"):
                continue
            match = ENV_LINE.match(line)
            if not match:
                continue
            value = match.group(2)
            if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
                value = value[1:-1]
            values[match.group(1)] = value
    return values


@dataclass(frozen=True)
class TeamInfo:
    """The config.env team descriptor."""
    team_id: str
    team_name: Optional[str] = None
    apple_id: Optional[str] = None
    api_key_id: Optional[str] = None
    api_issuer_id: Optional[str] = None
    api_key_path: Optional[str] = None
    app_identifier: Optional[str] = None
    app_name: Optional[str] = None
    scheme: Optional[str] = None
    p12_password: Optional[str] = field(default=None, repr=False)
    created_at: Optional[str] = None
    last_deployment_date: Optional[str] = None
    last_deployment_version: Optional[str] = None
    last_deployment_build: Optional[str] = None
    status: Optional[str] = None

    @staticmethod
    def _env_key(name: str) -> str:
        return name.upper()

    @classmethod
    def from_env_dict(cls, values: dict[str, str]) -> "TeamInfo":
        kwargs = {f.name: values.get(cls._env_key(f.name)) for f in fields(cls)}
        kwargs["team_id"] = kwargs["team_id"] or ""
        return cls(**kwargs)

    @classmethod
    def load(cls, layout: CredentialsLayout) -> Optional["TeamInfo"]:
        """Load the team's config.env, or None if there is none."""
        if not layout.config_file.is_file():
            return None
        return cls.from_env_dict(parse_env_file(layout.config_file))

    def update(self, **changes: Any) -> "TeamInfo":
        return replace(self, **changes)

    def record_deployment(self, version: str, build: str, now: Optional[datetime] = None) -> "TeamInfo":
        now = now or utcnow()
        return replace(
            self,
            last_deployment_date=now.strftime("%Y-%m-%dT%H:%M:%SZ"),
            last_deployment_version=version,
            last_deployment_build=build,
            status="PRODUCTION_READY",
        )

    def render(self) -> str:
        """Render as config.env text."""
        def line(key: str, value: Optional[str], quote: bool = False) -> str:
            value = value or ""
            return f'{key}="{value}"' if quote else f"{key}={value}"

        return "\n".join([
            "# iOS release configuration",
            f"# Team: {self.team_id}",
            "",
            line("TEAM_ID", self.team_id),
            line("TEAM_NAME", self.team_name, quote=True),
            line("APPLE_ID", self.apple_id),
            "",
            line("API_KEY_ID", self.api_key_id),
            line("API_ISSUER_ID", self.api_issuer_id),
            line("API_KEY_PATH", self.api_key_path),
            "",
            line("APP_IDENTIFIER", self.app_identifier),
            line("APP_NAME", self.app_name, quote=True),
            line("SCHEME", self.scheme),
            "",
            line("P12_PASSWORD", self.p12_password, quote=True),
            line("CREATED_AT", self.created_at),
            "",
            line("LAST_DEPLOYMENT_DATE", self.last_deployment_date),
            line("LAST_DEPLOYMENT_VERSION", self.last_deployment_version),
            line("LAST_DEPLOYMENT_BUILD", self.last_deployment_build),
            "",
            line("STATUS", self.status),
            "",
        ])

    def save(self, layout: CredentialsLayout, now: Optional[datetime] = None) -> Path:
        """Write config.env, backing up the previous file first.

        Returns:
            Path to the written file
        """
        layout.team_dir.mkdir(parents=True, exist_ok=True)
        path = layout.config_file
        if path.exists():
            layout.backups_dir.mkdir(parents=True, exist_ok=True)
            stamp = (now or utcnow()).strftime("%Y%m%d_%H%M%S")
            backup = layout.backups_dir / f"config.env.backup.{stamp}"
            shutil.copy2(path, backup)
            logger.debug(f"Backed up {path} to {backup}")

        info = self if self.created_at else replace(
            self, created_at=(now or utcnow()).strftime("%Y-%m-%dT%H:%M:%SZ")
        )
        path.write_text(info.render())
        if os.name != "nt":
            os.chmod(path, 0o600)
        return path

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (password excluded)."""
        result = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "p12_password"}
        result["has_p12_password"] = bool(self.p12_password)
        return result
