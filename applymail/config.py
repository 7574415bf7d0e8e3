from __future__ import annotations
import os
from dataclasses import dataclass
from email.utils import formataddr
from typing import Dict, Mapping, Optional, Sequence, Tuple

from dotenv import dotenv_values
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MailerError(Exception):
    """Base class for mailer failures."""


class MailerConfigError(MailerError):
    pass


class Settings(BaseSettings):
    # ----------------
    # Logging
    # ----------------
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file: Optional[str] = Field(None, alias="MAILER_LOG_FILE")
    app_env: Optional[str] = Field(None, alias="APP_ENV")

    # ----------------
    # Ethereal (dev sandbox)
    # ----------------
    ethereal_api_url: str = Field("https://api.nodemailer.com", alias="ETHEREAL_API")
    ethereal_web_url: str = Field("https://ethereal.email", alias="ETHEREAL_WEB")
    ethereal_timeout: float = Field(30.0, alias="ETHEREAL_TIMEOUT")

    # ----------------
    # SMTP pool
    # ----------------
    smtp_max_connections: int = Field(5, alias="MAIL_MAX_CONNECTIONS")
    smtp_timeout: float = Field(60.0, alias="MAIL_TIMEOUT")

    # ----------------
    # Sender defaults
    # ----------------
    default_from_name: str = Field("Techlynx Innovations", alias="DEFAULT_FROM_NAME")
    default_from_email: str = Field("no-reply@example.com", alias="DEFAULT_FROM_EMAIL")

    # ----------------
    # Pydantic settings
    # ----------------
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()


# Older deployments used SMTP_* names, newer ones MAIL_*; first non-empty wins.
ENV_ALIASES: Dict[str, Tuple[str, ...]] = {
    "use_sandbox": ("USE_ETHEREAL",),
    "host": ("MAIL_HOST", "SMTP_HOST"),
    "user": ("MAIL_USER", "SMTP_USER", "FROM_EMAIL"),
    "password": ("MAIL_PASS", "SMTP_PASS"),
    "port": ("MAIL_PORT", "SMTP_PORT"),
    "secure": ("MAIL_SECURE", "SMTP_SECURE"),
    "from_name": ("FROM_NAME",),
    "from_email": ("FROM_EMAIL", "MAIL_USER", "SMTP_USER"),
}


def process_env() -> Dict[str, str]:
    """
    The mapping Settings reads: the .env file, overridden by the real environment.
    """
    env_file = Settings.model_config.get("env_file")
    file_values = dotenv_values(env_file) if env_file and os.path.isfile(env_file) else {}
    return {**{k: v for k, v in file_values.items() if v is not None}, **os.environ}


def first_env(keys: Sequence[str], environ: Mapping[str, str] | None = None) -> Optional[str]:
    env = process_env() if environ is None else environ
    for key in keys:
        value = env.get(key)
        if value:
            return value
    return None


def env_setting(name: str, environ: Mapping[str, str] | None = None) -> Optional[str]:
    return first_env(ENV_ALIASES[name], environ)


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true")


def _parse_port(value: str | None) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError as e:
        raise MailerConfigError(f"Invalid SMTP port: {value!r}") from e


@dataclass(frozen=True)
class MailerConfig:
    use_sandbox: bool
    host: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    port: Optional[int] = None
    secure: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "MailerConfig":
        env = process_env() if environ is None else environ
        host = env_setting("host", env)
        user = env_setting("user", env)
        password = env_setting("password", env)
        use_sandbox = _truthy(env_setting("use_sandbox", env)) or not (host and user and password)
        return cls(
            use_sandbox=use_sandbox,
            host=host,
            user=user,
            password=password,
            # the sandbox brings its own port; a junk MAIL_PORT only matters for real SMTP
            port=None if use_sandbox else _parse_port(env_setting("port", env)),
            secure=(env_setting("secure", env) or "").lower() == "true",
        )

    @property
    def resolved_port(self) -> int:
        if self.port is not None:
            return self.port
        return 465 if self.secure else 587

    @property
    def resolved_secure(self) -> bool:
        return self.secure or self.resolved_port == 465

    def __repr__(self) -> str:
        return (
            f"MailerConfig(use_sandbox={self.use_sandbox}, host={self.host!r}, "
            f"user={self.user!r}, port={self.port}, secure={self.secure})"
        )


def sender_name(environ: Mapping[str, str] | None = None) -> str:
    return env_setting("from_name", environ) or settings.default_from_name


def from_header(environ: Mapping[str, str] | None = None) -> str:
    env = process_env() if environ is None else environ
    address = env_setting("from_email", env) or settings.default_from_email
    return formataddr((sender_name(env), address))
