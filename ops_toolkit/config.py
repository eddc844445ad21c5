# ops_toolkit/config.py
from __future__ import annotations
import os
from dataclasses import dataclass, field, fields, is_dataclass, replace
from typing import Any, Dict, Iterable, Mapping, Optional

import boto3  # type: ignore
import yaml
from botocore.config import Config #type: ignore

from core.errors import ConfigError

# ---- Env helpers
def _env_str(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default

def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default

def _env_bool(key: str, default: bool) -> bool:
    v = os.getenv(key)
    return default if v is None else v.strip().lower() in {"1", "true", "yes", "y"}

def _env_list(key: str, default: Iterable[str]) -> list[str]:
    v = os.getenv(key)
    return [s.strip() for s in v.split(",") if s.strip()] if v else list(default)

# ---- SDK config
SDK_CONFIG = Config(
    retries={"max_attempts": 10, "mode": "standard"},
    connect_timeout=5, read_timeout=60,
    user_agent_extra="aws-ops-toolkit/1.0",
)

# ------------------------------------------------------------
# DEFAULTS
# Every value can be overridden via AWSOPS_* env vars or a YAML file.
# ------------------------------------------------------------

LAMBDA_CONTEXT_KEY = "aws:lambda:FunctionArn"
DEFAULT_ROOT_DEVICE = "/dev/sda1"
DEFAULT_CREDENTIALS_FILE = os.path.join("~", ".aws", "credentials")


@dataclass
class KmsSettings:
    """Grant pruning knobs."""
    key_arn: str = ""
    context_key: str = LAMBDA_CONTEXT_KEY
    max_workers: int = 1
    strict_principals: bool = False


@dataclass
class IopsSettings:
    volume_id: str = ""
    lookback_seconds: int = 86400  # 24h


@dataclass
class RdsSettings:
    db_instance: str = ""
    lookback_seconds: int = 2592000  # 30d


@dataclass
class Ec2Settings:
    root_device: str = DEFAULT_ROOT_DEVICE
    environment_tag: str = "environment"
    project_tag: str = "project"


@dataclass
class KeyRotationSettings:
    credentials_file: str = DEFAULT_CREDENTIALS_FILE
    profiles: list = field(default_factory=list)


@dataclass
class LogSettings:
    """Where log lines go; mirrors the console/file/json/syslog sinks."""
    level: str = "INFO"
    debug: bool = False
    file: bool = False
    file_path: str = ""
    json: bool = False
    json_path: str = ""
    syslog: bool = False
    syslog_tag: str = "aws-ops"
    syslog_facility: str = "local0"
    syslog_address: str = "/dev/log"
    colour: bool = True


@dataclass
class ToolkitConfig:
    """Explicit configuration handed to every entry point."""
    profile: Optional[str] = None
    region: Optional[str] = None
    kms: KmsSettings = field(default_factory=KmsSettings)
    iops: IopsSettings = field(default_factory=IopsSettings)
    rds: RdsSettings = field(default_factory=RdsSettings)
    ec2: Ec2Settings = field(default_factory=Ec2Settings)
    keys: KeyRotationSettings = field(default_factory=KeyRotationSettings)
    logging: LogSettings = field(default_factory=LogSettings)


def config_from_env() -> ToolkitConfig:
    """Build the default configuration, honouring AWSOPS_* overrides."""
    return ToolkitConfig(
        profile=os.getenv("AWSOPS_PROFILE") or None,
        region=os.getenv("AWSOPS_REGION") or None,
        kms=KmsSettings(
            key_arn=_env_str("AWSOPS_KMS_KEY_ARN", ""),
            context_key=_env_str("AWSOPS_KMS_CONTEXT_KEY", LAMBDA_CONTEXT_KEY),
            max_workers=_env_int("AWSOPS_KMS_MAX_WORKERS", 1),
            strict_principals=_env_bool("AWSOPS_KMS_STRICT_PRINCIPALS", False),
        ),
        iops=IopsSettings(
            volume_id=_env_str("AWSOPS_IOPS_VOLUME", ""),
            lookback_seconds=_env_int("AWSOPS_IOPS_LOOKBACK_SECONDS", 86400),
        ),
        rds=RdsSettings(
            db_instance=_env_str("AWSOPS_RDS_INSTANCE", ""),
            lookback_seconds=_env_int("AWSOPS_RDS_LOOKBACK_SECONDS", 2592000),
        ),
        ec2=Ec2Settings(
            root_device=_env_str("AWSOPS_EC2_ROOT_DEVICE", DEFAULT_ROOT_DEVICE),
        ),
        keys=KeyRotationSettings(
            credentials_file=_env_str("AWSOPS_CREDENTIALS_FILE", DEFAULT_CREDENTIALS_FILE),
            profiles=_env_list("AWSOPS_ROTATE_PROFILES", []),
        ),
        logging=LogSettings(
            level=_env_str("AWSOPS_LOG_LEVEL", "INFO").upper(),
            debug=_env_int("DEBUG", 0) > 0,
            file=_env_bool("AWSOPS_LOG_FILE", False),
            file_path=_env_str("AWSOPS_LOG_FILE_PATH", ""),
            json=_env_bool("AWSOPS_LOG_JSON", False),
            json_path=_env_str("AWSOPS_LOG_JSON_PATH", ""),
            syslog=_env_bool("AWSOPS_LOG_SYSLOG", False),
            syslog_tag=_env_str("AWSOPS_LOG_SYSLOG_TAG", "aws-ops"),
            syslog_facility=_env_str("AWSOPS_LOG_SYSLOG_FACILITY", "local0"),
        ),
    )


def _checked(value: Any, current: Any, name: str, nullable: bool = False) -> Any:
    """`value` if it fits the type of the field's current value, else ConfigError.

    A single string is accepted where a list is expected.
    """
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        raise ConfigError(f"'{name}' must be true or false, got {value!r}")
    if isinstance(current, int):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        raise ConfigError(f"'{name}' must be an integer, got {value!r}")
    if isinstance(current, list):
        if isinstance(value, str):
            return [value]
        if isinstance(value, list) and all(isinstance(item, str) for item in value):
            return list(value)
        raise ConfigError(f"'{name}' must be a string or a list of strings, got {value!r}")
    if value is None and nullable:
        return None
    if isinstance(value, str):
        return value
    raise ConfigError(f"'{name}' must be a string, got {value!r}")


def _overlay(base: Any, data: Mapping[str, Any], where: str) -> Any:
    """Return a copy of dataclass `base` with `data` applied; unknown keys are errors."""
    known = {f.name: f for f in fields(base)}
    changes: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            raise ConfigError(f"Unknown configuration key '{where}{key}'")
        current = getattr(base, key)
        if is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ConfigError(f"'{where}{key}' must be a mapping")
            changes[key] = _overlay(current, value, f"{where}{key}.")
        else:
            nullable = "Optional" in str(known[key].type)
            changes[key] = _checked(value, current, f"{where}{key}", nullable)
    return replace(base, **changes)


def load_config(path: Optional[str] = None, base: Optional[ToolkitConfig] = None) -> ToolkitConfig:
    """Env-backed defaults, optionally overlaid with a YAML file."""
    cfg = base or config_from_env()
    if not path:
        return cfg
    try:
        with open(os.path.expanduser(path), "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at top level")
    return _overlay(cfg, data, "")


def make_session(cfg: ToolkitConfig) -> boto3.Session:
    """boto3 session for the configured profile/region (None means SDK defaults)."""
    return boto3.Session(profile_name=cfg.profile, region_name=cfg.region)


def make_client(session: boto3.Session, service: str, region: Optional[str] = None):
    """Client with the shared SDK config."""
    return session.client(service, region_name=region or session.region_name, config=SDK_CONFIG)
