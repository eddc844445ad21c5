"""Task: temporary STS credentials for an interactive shell.

A child process cannot change its parent shell's environment, so the CLI
prints ``export``/``unset`` lines meant to be evaluated by the shell:

    eval "$(python aws_ops.py mfa --profile prod)"
    eval "$(python aws_ops.py assume-role Admin)"
    eval "$(python aws_ops.py unset-sts)"
    PS1='$(python aws_ops.py status) '$PS1

The same helpers give the key rotation task its MFA-authenticated session.
"""

from __future__ import annotations

import getpass
import logging
import re
import shlex
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Mapping, MutableMapping, Optional

import boto3  # type: ignore
from botocore.exceptions import BotoCoreError, ClientError

from aws_tasks.common import _logger
from core.errors import MfaError, StsError
from ops_toolkit.config import make_client

STS_ENV_VARS = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "AWS_MFA_EXPIRY",
    "AWS_SESSION_EXPIRY",
    "AWS_ROLE",
)

_SESSION_NAME_INVALID = re.compile(r"[^\w+=,.@-]")


@dataclass(frozen=True)
class StsCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: Optional[datetime] = None
    role: Optional[str] = None

    @classmethod
    def from_response(cls, creds: Optional[Mapping], role: Optional[str] = None) -> "StsCredentials":
        creds = creds or {}
        return cls(
            access_key_id=str(creds.get("AccessKeyId") or ""),
            secret_access_key=str(creds.get("SecretAccessKey") or ""),
            session_token=str(creds.get("SessionToken") or ""),
            expiration=creds.get("Expiration"),
            role=role,
        )

    @property
    def complete(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key and self.session_token)

    def session(self, region_name: Optional[str] = None) -> boto3.Session:
        return boto3.Session(
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            aws_session_token=self.session_token,
            region_name=region_name,
        )


def unset_sts(env: MutableMapping[str, str]) -> List[str]:
    """Drop every STS variable from `env`; return the names that were set."""
    removed = [name for name in STS_ENV_VARS if name in env]
    for name in removed:
        del env[name]
    return removed


def mfa_serial(iam) -> str:
    """Serial number (ARN) of the caller's first MFA device."""
    devices = iam.list_mfa_devices().get("MFADevices", []) or []
    if not devices:
        raise MfaError("No MFA device is registered for this user")
    return devices[0]["SerialNumber"]


def mfa_session(
    session: boto3.Session,
    read_token: Callable[[str], str],
    *,
    logger: Optional[logging.Logger] = None,
) -> StsCredentials:
    """Authenticate with an MFA token code and return the session credentials.

    `session` must carry the user's long-term credentials (a profile), not an
    earlier STS session.
    """
    log = _logger(logger)
    try:
        serial = mfa_serial(make_client(session, "iam"))
    except (ClientError, BotoCoreError) as exc:
        raise MfaError(f"Failed to retrieve MFA serial number: {exc}") from exc

    token = (read_token("MFA Token Code: ") or "").strip()
    if not token:
        raise MfaError("No MFA token code entered")

    try:
        resp = make_client(session, "sts").get_session_token(TokenCode=token, SerialNumber=serial)
    except (ClientError, BotoCoreError) as exc:
        raise MfaError(f"STS MFA Request Failed: {exc}") from exc

    creds = StsCredentials.from_response(resp.get("Credentials"))
    if not creds.complete:
        raise MfaError("MFA Failed: STS returned incomplete credentials")
    log.info("MFA Succeeded. With great power comes great responsibility...")
    return creds


def default_session_name() -> str:
    name = f"{getpass.getuser()}-{socket.gethostname()}"
    return _SESSION_NAME_INVALID.sub("-", name)[:64]


def assume_role(
    session: boto3.Session,
    role: str,
    account_id: Optional[str] = None,
    *,
    session_name: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> StsCredentials:
    """Assume `role` in `account_id` (default: the caller's own account)."""
    log = _logger(logger)
    sts = make_client(session, "sts")
    try:
        account = account_id or sts.get_caller_identity()["Account"]
        resp = sts.assume_role(
            RoleArn=f"arn:aws:iam::{account}:role/{role}",
            RoleSessionName=session_name or default_session_name(),
        )
    except (ClientError, BotoCoreError) as exc:
        raise StsError(f"STS Assume Role Request Failed: {exc}") from exc

    creds = StsCredentials.from_response(resp.get("Credentials"), role=role)
    if not creds.complete:
        raise StsError("STS Assume Role Failed: incomplete credentials")
    log.info(
        "Successfully assumed the %s role. With great power comes great responsibility...", role
    )
    return creds


def _iso(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def credentials_env(creds: StsCredentials) -> Dict[str, str]:
    """Environment for the credentials: MFA expiry for sessions, role + expiry for roles."""
    env = {
        "AWS_ACCESS_KEY_ID": creds.access_key_id,
        "AWS_SECRET_ACCESS_KEY": creds.secret_access_key,
        "AWS_SESSION_TOKEN": creds.session_token,
    }
    if creds.role:
        env["AWS_SESSION_EXPIRY"] = _iso(creds.expiration)
        env["AWS_ROLE"] = creds.role
    else:
        env["AWS_MFA_EXPIRY"] = _iso(creds.expiration)
    return env


def export_lines(env: Mapping[str, str]) -> List[str]:
    return [f"export {name}={shlex.quote(value)}" for name, value in env.items()]


def unset_lines(names=STS_ENV_VARS) -> List[str]:
    return [f"unset {name}" for name in names]


def _parse_expiry(raw: str) -> datetime:
    value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _ttl(raw: str, now: datetime, label: str) -> str:
    try:
        remaining = int((_parse_expiry(raw) - now).total_seconds())
    except ValueError:
        return f", {label} TTL: unknown"
    if remaining <= 0:
        return f", {label} EXPIRED!"
    hours, rest = divmod(remaining, 3600)
    minutes, seconds = divmod(rest, 60)
    return f", {label} TTL: {hours:02d}h {minutes:02d}m {seconds:02d}s"


def session_status(env: Mapping[str, str], now: Optional[datetime] = None) -> str:
    """One-line status of the shell's AWS identity, e.g. for a prompt."""
    now = now or datetime.now(timezone.utc)
    role = env.get("AWS_ROLE")
    if role:
        out = f"[AWS_ROLE: {role}"
        if env.get("AWS_SESSION_EXPIRY"):
            out += _ttl(env["AWS_SESSION_EXPIRY"], now, "SESSION")
    else:
        out = f"[AWS_PROFILE: {env.get('AWS_PROFILE') or 'default'}"
        if env.get("AWS_MFA_EXPIRY"):
            out += _ttl(env["AWS_MFA_EXPIRY"], now, "MFA")
    return out + "]"
