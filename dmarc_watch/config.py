"""Configuration management for the report ingestion pipeline."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from croniter import croniter
from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env early so BaseSettings can pick values up seamlessly.
load_dotenv()


def _parse_headers(raw: str) -> dict[str, str]:
    """Turn a JSON object string into a flat header mapping."""
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"MAIL_WEB_HOOK_HEADERS is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError("MAIL_WEB_HOOK_HEADERS must be a JSON object")
    return {str(key): str(value) for key, value in parsed.items()}


class Settings(BaseSettings):
    """App configuration derived from environment variables."""

    imap_host: str = Field(..., alias="IMAP_HOST")
    imap_user: str = Field(..., alias="IMAP_USER")
    imap_password: str = Field(..., alias="IMAP_PASSWORD")
    imap_port: int = Field(993, alias="IMAP_PORT")
    imap_folder: str = Field("INBOX", alias="IMAP_FOLDER")
    imap_starttls: bool = Field(False, alias="IMAP_STARTTLS")
    imap_disable_tls: bool = Field(False, alias="IMAP_DISABLE_TLS")
    imap_tls_ca_certs: Path | None = Field(None, alias="IMAP_TLS_CA_CERTS")
    imap_timeout: int = Field(10, alias="IMAP_TIMEOUT")
    imap_chunk_size: int = Field(5000, alias="IMAP_CHUNK_SIZE")
    imap_check_interval: int = Field(1800, alias="IMAP_CHECK_INTERVAL")
    imap_check_schedule: str | None = Field(None, alias="IMAP_CHECK_SCHEDULE")

    max_mail_size: int = Field(1024 * 1024, alias="MAX_MAIL_SIZE")
    parse_cache_size: int = Field(10000, alias="PARSE_CACHE_SIZE")

    mail_web_hook_url: str | None = Field(None, alias="MAIL_WEB_HOOK_URL")
    mail_web_hook_method: str = Field("POST", alias="MAIL_WEB_HOOK_METHOD")
    mail_web_hook_headers_raw: str | None = Field(None, alias="MAIL_WEB_HOOK_HEADERS")
    mail_web_hook_body: str | None = Field(None, alias="MAIL_WEB_HOOK_BODY")
    mail_web_hook_skip_initial: bool = Field(False, alias="MAIL_WEB_HOOK_SKIP_INITIAL")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator(
        "imap_tls_ca_certs",
        "imap_check_schedule",
        "mail_web_hook_url",
        "mail_web_hook_headers_raw",
        "mail_web_hook_body",
        mode="before",
    )
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("imap_chunk_size", "imap_check_interval", "parse_cache_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be bigger than 0")
        return value

    @field_validator("imap_check_schedule")
    @classmethod
    def _valid_schedule(cls, value: str | None) -> str | None:
        if value is not None and not croniter.is_valid(value.strip()):
            raise ValueError(f"'{value}' is not a valid cron expression")
        return value.strip() if value else value

    @field_validator("mail_web_hook_method")
    @classmethod
    def _normalize_method(cls, value: str) -> str:
        return value.strip().upper() or "POST"

    @field_validator("mail_web_hook_headers_raw")
    @classmethod
    def _valid_headers(cls, value: str | None) -> str | None:
        if value is not None:
            _parse_headers(value)
        return value

    @model_validator(mode="after")
    def _validate_tls_mode(self):
        if self.imap_starttls and self.imap_disable_tls:
            raise ValueError("IMAP_STARTTLS and IMAP_DISABLE_TLS cannot be combined.")
        return self

    @property
    def mail_web_hook_headers(self) -> dict[str, str]:
        """Extra web hook headers given as a JSON object."""
        if not self.mail_web_hook_headers_raw:
            return {}
        return _parse_headers(self.mail_web_hook_headers_raw)

    def describe(self) -> dict[str, Any]:
        """Settings suitable for start-up logging, with secrets redacted."""
        return {
            "imap_host": self.imap_host,
            "imap_port": self.imap_port,
            "imap_user": self.imap_user,
            "imap_folder": self.imap_folder,
            "imap_starttls": self.imap_starttls,
            "imap_disable_tls": self.imap_disable_tls,
            "imap_tls_ca_certs": str(self.imap_tls_ca_certs) if self.imap_tls_ca_certs else None,
            "imap_timeout": self.imap_timeout,
            "imap_chunk_size": self.imap_chunk_size,
            "imap_check_interval": self.imap_check_interval,
            "imap_check_schedule": self.imap_check_schedule,
            "max_mail_size": self.max_mail_size,
            "parse_cache_size": self.parse_cache_size,
            "mail_web_hook_url": self.mail_web_hook_url,
            "mail_web_hook_method": self.mail_web_hook_method,
            "mail_web_hook_skip_initial": self.mail_web_hook_skip_initial,
            "log_level": self.log_level,
        }
