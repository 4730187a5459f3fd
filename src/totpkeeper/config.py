"""Central configuration loaded from environment variables and import files."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from totpkeeper.errors import ImportValidationError
from totpkeeper.models import DEFAULT_ICON_CDN, Credentials

DATA_DIR = Path.home() / ".totpkeeper"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="TOTPKEEPER_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Storage
    data_file: Path = Field(default_factory=lambda: DATA_DIR / "accounts.json")

    # Encryption (base64 of 32 random bytes; empty stores plaintext JSON)
    master_key: str = ""

    # Remote sync
    server_url: str = ""
    access_token: str = ""
    username: str = ""
    sync_interval_s: float = 60.0
    sync_timeout_s: float = 10.0

    # Codes
    totp_step_s: int = 30
    totp_digits: int = 6

    # Icons
    icon_cdn_url: str = DEFAULT_ICON_CDN

    @property
    def credentials(self) -> Credentials:
        return Credentials(
            server_url=self.server_url,
            access_token=self.access_token,
            username=self.username,
        )


def load_import_file(path: Path | str) -> list[Any]:
    """Load a batch of account records from a YAML or JSON file.

    The file holds either a list of records or a mapping with an
    ``accounts`` list. Records are mappings or otpauth:// URIs.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Import file not found: {path}")
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ImportValidationError(f"Cannot parse {path.name}: {e}") from e
    if isinstance(data, dict):
        data = data.get("accounts")
    if not isinstance(data, list):
        raise ImportValidationError(f"{path.name} does not contain a list of accounts")
    return data


settings = Settings()
