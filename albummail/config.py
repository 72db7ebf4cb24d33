"""Pydantic models with basic validations"""

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator
from typing import Optional, Dict, Any, List, Union
from pathlib import Path
import yaml
from apscheduler.triggers.cron import CronTrigger
from dotenv import main
import os
import re

from .pipeline import (
    ImmichConfig as ImmichConfig_,
    ConverterConfig as ConverterConfig_,
    DelivererConfig as DelivererConfig_,
    RecipientTarget as RecipientTarget_,
    StateStoreConfig as StateStoreConfig_
)

log_levels = ["debug", "info", "warning", "error"]
asset_sources = ["original", "preview"]

EMAIL_PATTERN = r"[^@\s]+@[^@\s]+\.[a-zA-Z]{2,}$"

class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""

def validate_email(v: str) -> str:
    v = v.strip()
    if not re.match(EMAIL_PATTERN, v):
        raise ValueError(f"Email address format is invalid: '{v}'")
    return v

def _env_flag(value: Optional[str]) -> Optional[bool]:
    if value is None or value == "":
        return None
    return value.strip().lower() in ("1", "true", "yes", "on")

def cron_trigger(expression: str, timezone: Optional[str]=None) -> CronTrigger:
    """
    Build a trigger from a 5-field crontab (min hour day month weekday) or a
    6-field one with a leading seconds field.
    """
    fields = expression.split()
    if len(fields) == 5:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    if len(fields) == 6:
        second, minute, hour, day, month, day_of_week = fields
        return CronTrigger(second=second, minute=minute, hour=hour, day=day,
                           month=month, day_of_week=day_of_week, timezone=timezone)
    raise ValueError("Schedule must be in 5-field (min hour day month weekday) or 6-field (sec min hour day month weekday) cron format")

class RunConfig(BaseModel):
    schedule: Optional[str]=None
    timezone: Optional[str]=None
    dry_run: bool=False
    log_level: str="info"
    log_dir: Optional[str]=None
    concurrency: int=4

    @field_validator('schedule')
    @classmethod
    def validate_schedule(cls, v) -> Optional[str]:
        """empty means run once; otherwise 5- or 6-field cron"""
        if v is None or not v.strip():
            return None
        try:
            cron_trigger(v.strip())
        except ValueError as e:
            raise ValueError(f"Invalid cron expression '{v}': {e}")
        return v.strip()

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v) -> str:
        v = v.strip().lower()
        if v not in log_levels:
            raise ValueError(f"Invalid log level '{v}', expected one of {log_levels}")
        return v

    @field_validator('concurrency')
    @classmethod
    def validate_concurrency(cls, v) -> int:
        return max(1, min(v, 16))

class ImmichConfig(BaseModel):
    base_url: str
    api_key: str
    album_name: str
    asset_source: str="original"
    timeout_seconds: int=60
    max_retries: int=3
    retry_delay_seconds: float=5.0

    @field_validator('base_url', 'api_key', 'album_name')
    @classmethod
    def validate_not_empty(cls, v, info) -> str:
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} must not be empty")
        return v.strip()

    @field_validator('asset_source')
    @classmethod
    def validate_asset_source(cls, v) -> str:
        if v not in asset_sources:
            raise ValueError(f"asset_source must be one of {asset_sources}")
        return v

    @field_validator('timeout_seconds')
    @classmethod
    def validate_timeout(cls, v) -> int:
        return max(5, min(v, 3600))

    @field_validator('max_retries')
    @classmethod
    def validate_max_retries(cls, v) -> int:
        return max(1, min(v, 100))

    def to_pipeline_config(self) -> 'ImmichConfig_':
        return ImmichConfig_(
            base_url=self.base_url,
            api_key=self.api_key,
            album_name=self.album_name,
            asset_source=self.asset_source,
            timeout_seconds=self.timeout_seconds,
            max_retries=self.max_retries,
            retry_delay_seconds=max(0.0, self.retry_delay_seconds)
        )

class ConvertConfig(BaseModel):
    target_width: int=1280
    target_height: int=800
    jpeg_quality: int=85
    strip_metadata: bool=False

    @field_validator('target_width', 'target_height')
    @classmethod
    def validate_dimension(cls, v) -> int:
        return max(16, min(v, 10000))

    @field_validator('jpeg_quality')
    @classmethod
    def validate_quality(cls, v) -> int:
        return max(1, min(v, 95))

    def to_pipeline_config(self) -> 'ConverterConfig_':
        return ConverterConfig_(
            target_width=self.target_width,
            target_height=self.target_height,
            jpeg_quality=self.jpeg_quality,
            strip_metadata=self.strip_metadata
        )

class RecipientConfig(BaseModel):
    address: str
    max_email_total_bytes: Optional[int]=None
    max_attachments_per_email: Optional[int]=None

    @model_validator(mode="before")
    @classmethod
    def from_plain_address(cls, data: Any) -> Any:
        """allow recipients to be given as plain strings"""
        if isinstance(data, str):
            return {"address": data}
        return data

    @field_validator('address')
    @classmethod
    def validate_address(cls, v: str) -> str:
        return validate_email(v)

    @field_validator('max_email_total_bytes', 'max_attachments_per_email')
    @classmethod
    def validate_limits(cls, v, info) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    def to_pipeline_config(self) -> 'RecipientTarget_':
        return RecipientTarget_(
            address=self.address,
            max_email_total_bytes=self.max_email_total_bytes,
            max_attachments_per_email=self.max_attachments_per_email
        )

class DelivererConfig(BaseModel):
    smtp_server: str
    username: str=""
    password: str=""
    sender: Optional[str]=None
    port: int=587
    use_starttls: bool=True
    timeout_seconds: int=60
    recipients: List[RecipientConfig]
    max_email_total_bytes: int=24_000_000
    max_attachments_per_email: int=20
    subject: str="New photos for your frame"
    """sender defaults to username when not given"""

    @field_validator('smtp_server')
    @classmethod
    def validate_smtp_server(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("smtp_server must not be empty")
        return v.strip()

    @field_validator('port')
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError("Port must be an integer between 1 and 65535.")
        return v

    @field_validator('recipients')
    @classmethod
    def validate_recipients(cls, v: List[RecipientConfig]) -> List[RecipientConfig]:
        if not v:
            raise ValueError("No recipient configured. Please add at least one recipient address.")
        seen = set()
        unique = []
        for recipient in v:
            key = recipient.address.lower()
            if key in seen:
                continue
            seen.add(key)
            unique.append(recipient)
        return unique

    @field_validator('max_email_total_bytes', 'max_attachments_per_email')
    @classmethod
    def validate_limits(cls, v, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return v

    @model_validator(mode='after')
    def validate_sender(self) -> 'DelivererConfig':
        sender = self.sender or self.username
        if not sender:
            raise ValueError("Either sender or username must be provided")
        self.sender = validate_email(sender)
        return self

    def to_pipeline_config(self) -> 'DelivererConfig_':
        return DelivererConfig_(
            smtp_server=self.smtp_server,
            port=self.port,
            sender=self.sender,
            username=self.username,
            password=self.password,
            recipients=[r.to_pipeline_config() for r in self.recipients],
            use_starttls=self.use_starttls,
            timeout_seconds=self.timeout_seconds,
            max_email_total_bytes=self.max_email_total_bytes,
            max_attachments_per_email=self.max_attachments_per_email,
            subject=self.subject
        )

class StateConfig(BaseModel):
    dir: str="./state"

    def to_pipeline_config(self) -> 'StateStoreConfig_':
        return StateStoreConfig_(dir=self.dir)


class MainConfig(BaseModel):
    model_config = ConfigDict(extra='forbid') # prevent unknown fields

    run: RunConfig=RunConfig()
    immich: ImmichConfig
    convert: ConvertConfig=ConvertConfig()
    deliver: DelivererConfig
    state: StateConfig=StateConfig()
    """If run, convert or state is not provided, go with default settings."""

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'MainConfig':
        """Load a YAML file; string values may be file:/env:/var:/$ references."""
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file '{path}' must contain a mapping")
        main.load_dotenv() # load .env file
        return cls(**cls._resolve_references(data))

    @classmethod
    def from_env(cls) -> 'MainConfig':
        """Build configuration from environment variables (and .env). Values are taken literally."""
        main.load_dotenv()
        env = os.environ

        def pick(**mapping: Optional[str]) -> Dict[str, Any]:
            # leave unset variables out so model defaults apply
            return {key: value for key, value in mapping.items() if value not in (None, "")}

        recipients = [r.strip() for r in env.get("TO_EMAILS", "").split(",") if r.strip()]
        data = {
            "run": pick(
                schedule=env.get("CRON_EXPRESSION"),
                timezone=env.get("TZ"),
                dry_run=_env_flag(env.get("DRY_RUN")),
                log_level=env.get("LOG_LEVEL"),
                log_dir=env.get("LOG_DIR"),
                concurrency=env.get("CONCURRENCY")
            ),
            "immich": {
                "base_url": env.get("IMMICH_BASE_URL", ""),
                "api_key": env.get("IMMICH_API_KEY", ""),
                "album_name": env.get("IMMICH_ALBUM_NAME", ""),
                **pick(asset_source=env.get("IMMICH_ASSET_SOURCE"))
            },
            "convert": pick(
                target_width=env.get("TARGET_WIDTH"),
                target_height=env.get("TARGET_HEIGHT"),
                jpeg_quality=env.get("JPEG_QUALITY"),
                strip_metadata=_env_flag(env.get("STRIP_METADATA"))
            ),
            "deliver": {
                "smtp_server": env.get("SMTP_HOST", ""),
                "recipients": recipients,
                **pick(
                    port=env.get("SMTP_PORT"),
                    username=env.get("SMTP_USER"),
                    password=env.get("SMTP_PASS"),
                    sender=env.get("FROM_EMAIL"),
                    use_starttls=_env_flag(env.get("SMTP_STARTTLS")),
                    max_email_total_bytes=env.get("MAX_EMAIL_TOTAL_BYTES"),
                    max_attachments_per_email=env.get("MAX_ATTACHMENTS_PER_EMAIL"),
                    subject=env.get("EMAIL_SUBJECT")
                )
            },
            "state": pick(dir=env.get("STATE_DIR"))
        }
        return cls(**data)

    @staticmethod
    def _resolve_value(value: str) -> str:
        if value.startswith('file:'):
            filepath = value[5:]
            try:
                with open(filepath, 'r', encoding='utf-8') as f:
                    return f.read().strip()
            except OSError as e:
                raise ValueError(f"Failed to load file '{filepath}'. Reason: {e}")
        if value.startswith('env:') or value.startswith('var:'):
            envname = value[4:]
        elif value.startswith('$'):
            # $ prefix for bash-style environment variables
            envname = value[1:]
        else:
            return value
        resolved = os.getenv(envname)
        if resolved is None:
            raise ValueError(f"Environment variable '{envname}' is not set or is empty. Please check your .env file or environment variables.")
        return resolved

    @staticmethod
    def _resolve_references(data: Any) -> Any:
        """Recursively resolve 'file:path', 'env:variable', 'var:variable', and '$variable' references"""
        if isinstance(data, dict):
            return {key: MainConfig._resolve_references(value) for key, value in data.items()}
        elif isinstance(data, list):
            return [MainConfig._resolve_references(item) for item in data]
        elif isinstance(data, str):
            return MainConfig._resolve_value(data)
        else:
            return data

    def get_pipeline_configs(self) -> Dict[str, Any]:
        """Convert all configs to pipeline dataclasses"""
        return {
            "schedule": self.run.schedule,
            "timezone": self.run.timezone,
            "dry_run": self.run.dry_run,
            "log_level": self.run.log_level,
            "log_dir": self.run.log_dir,
            "concurrency": self.run.concurrency,
            "immich": self.immich.to_pipeline_config(),
            "convert": self.convert.to_pipeline_config(),
            "deliver": self.deliver.to_pipeline_config(),
            "state": self.state.to_pipeline_config()
        }

def _format_validation_error(e: ValidationError) -> str:
    lines = []
    for err in e.errors():
        location = ".".join(str(part) for part in err["loc"]) or "config"
        lines.append(f"{location}: {err['msg']}")
    return "; ".join(lines)

def load_config(path: Optional[Union[str, Path]]=None) -> MainConfig:
    """
    Load configuration once, before any component is built.

    A YAML file is used when path points to an existing file; without a path
    the configuration is read from the environment. Every failure is raised
    as ConfigError.
    """
    try:
        if path is not None:
            config_file = Path(path)
            if not config_file.exists():
                raise ConfigError(f"Configuration file '{config_file}' not found")
            return MainConfig.from_yaml(config_file)
        return MainConfig.from_env()
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {_format_validation_error(e)}") from e
    except (ValueError, yaml.YAMLError, OSError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
