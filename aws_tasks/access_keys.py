"""Task: rotate IAM access keys of the profiles in the shared credentials file.

For each profile (after a Y/n confirmation):
  1. open an MFA session with the profile's current key,
  2. require exactly one existing access key in IAM,
  3. create the replacement key,
  4. check the credentials file really holds the key being replaced,
  5. write the new key id/secret into the profile (atomically; on failure the
     new key is deleted again),
  6. delete the old key.

Problems before step 3 skip the profile. Problems after it leave IAM and the
credentials file disagreeing, so they raise :class:`RotationAbortedError` and
stop the whole run for manual repair.
"""

from __future__ import annotations

import configparser
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import boto3  # type: ignore
from botocore.exceptions import BotoCoreError, ClientError

from aws_tasks.common import _logger
from core.errors import ConfigError, RotationAbortedError, StsError
from ops_toolkit.config import make_client

SessionFactory = Callable[[str], boto3.Session]
Prompt = Callable[[str], str]

_YES = {"", "y", "Y"}


@dataclass
class RotationSummary:
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class _SkipProfile(Exception):
    """Internal: the profile is left untouched."""


# ------------------------- credentials file helpers ------------------------ #

def _resolve(path: str) -> str:
    return os.path.expanduser(path)


def check_credentials_file(path: str) -> str:
    """Return the expanded path; it must be readable and writable."""
    full = _resolve(path)
    if not os.access(full, os.R_OK):
        raise ConfigError(f"{path} not readable")
    if not os.access(full, os.W_OK):
        raise ConfigError(f"{path} not writable")
    return full


def read_credentials(path: str) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None)
    # AWS keys and profile names are case sensitive
    parser.optionxform = str  # type: ignore[assignment]
    parser.read(_resolve(path), encoding="utf-8")
    return parser


def write_credentials(path: str, parser: configparser.ConfigParser) -> None:
    """Replace the credentials file atomically; the result has 0600 permissions.

    The new content goes to a sibling temp file first, so a failed write leaves
    the existing file untouched.
    """
    full = _resolve(path)
    Path(full).parent.mkdir(parents=True, exist_ok=True)
    tmp = f"{full}.{os.getpid()}.tmp"
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            parser.write(handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, full)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def credential_profiles(path: str) -> List[str]:
    return read_credentials(path).sections()


# --------------------------------- rotation -------------------------------- #

def _rotate_one(
    profile: str,
    credentials_file: str,
    session_factory: SessionFactory,
    log: logging.Logger,
) -> None:
    log.info("[%s] Initiating MFA session", profile)
    try:
        session = session_factory(profile)
    except (StsError, ClientError, BotoCoreError) as exc:
        log.warning("[%s] MFA Failure (%s). Skipping.", profile, exc)
        raise _SkipProfile() from exc

    iam = make_client(session, "iam")
    try:
        keys = iam.list_access_keys().get("AccessKeyMetadata", []) or []
    except (ClientError, BotoCoreError) as exc:
        log.warning("[%s] Couldn't retrieve access keys (%s). Permission failure? Skipping.", profile, exc)
        raise _SkipProfile() from exc

    if not keys:
        log.warning("[%s] No existing key - how did we even get here? - Skipping.", profile)
        raise _SkipProfile()
    if len(keys) > 1:
        log.warning(
            "[%s] Two keys already present. We can't create a third, "
            "so this automated process won't work - Skipping.", profile,
        )
        raise _SkipProfile()
    existing_key_id = keys[0]["AccessKeyId"]
    log.info("[%s] One existing key found to replace: %s", profile, existing_key_id)

    try:
        new_key = iam.create_access_key()["AccessKey"]
    except (ClientError, BotoCoreError) as exc:
        log.warning("[%s] Couldn't create access key (%s). Permission failure? Skipping.", profile, exc)
        raise _SkipProfile() from exc
    new_key_id = new_key["AccessKeyId"]

    parser = read_credentials(credentials_file)
    configured = parser.get(profile, "aws_access_key_id", fallback="")
    if configured != existing_key_id:
        raise RotationAbortedError(
            profile,
            "The key in the credentials file for this profile isn't the same as the one in IAM. "
            f"Both {existing_key_id} and {new_key_id} now exist in IAM and the old one is still "
            "in the credentials file; handle this manually.",
        )

    log.info("[%s] Replacing key %s with %s in %s", profile, configured, new_key_id, credentials_file)
    parser.set(profile, "aws_access_key_id", new_key_id)
    parser.set(profile, "aws_secret_access_key", new_key["SecretAccessKey"])
    try:
        write_credentials(credentials_file, parser)
    except OSError as exc:
        # The file is unchanged, so the new key would be unusable.
        log.error("[%s] Couldn't write %s (%s). Deleting new key %s", profile, credentials_file, exc, new_key_id)
        try:
            iam.delete_access_key(AccessKeyId=new_key_id)
        except (ClientError, BotoCoreError) as rollback_exc:
            raise RotationAbortedError(
                profile,
                f"Couldn't write the new key to {credentials_file} ({exc}) nor delete it from IAM "
                f"({rollback_exc}). Delete {new_key_id} manually; {existing_key_id} is still in use.",
            ) from exc
        raise RotationAbortedError(
            profile,
            f"Couldn't write the new key to {credentials_file} ({exc}). {new_key_id} was deleted "
            f"again; {existing_key_id} is still in use and the file is unchanged.",
        ) from exc

    # The MFA session opened with the old key is still valid for the delete.
    log.info("[%s] Deleting access key %s", profile, existing_key_id)
    try:
        iam.delete_access_key(AccessKeyId=existing_key_id)
    except (ClientError, BotoCoreError) as exc:
        raise RotationAbortedError(
            profile,
            f"Couldn't delete the old Access Key ({existing_key_id}): {exc}. Handle this manually.",
        ) from exc
    log.info("[%s] Successfully rotated Access Key", profile)


def rotate_profiles(
    profiles: Optional[Iterable[str]],
    *,
    credentials_file: str,
    session_factory: SessionFactory,
    confirm: Prompt = input,
    logger: Optional[logging.Logger] = None,
) -> RotationSummary:
    """Rotate the given profiles (all profiles in the file when none are given)."""
    log = _logger(logger)
    check_credentials_file(credentials_file)

    selected = list(profiles or [])
    if not selected:
        log.info("No profile(s) specified. Iterating all profiles in %s", credentials_file)
        selected = credential_profiles(credentials_file)

    summary = RotationSummary()
    for profile in selected:
        answer = confirm(f"Replace the Access Key for profile {profile}? (Y/n): ").strip()
        if answer not in _YES:
            log.info("[%s] Skipping profile by request", profile)
            summary.skipped.append(profile)
            continue
        try:
            _rotate_one(profile, credentials_file, session_factory, log)
        except _SkipProfile:
            summary.skipped.append(profile)
            continue
        summary.succeeded.append(profile)

    log.info("All profiles finished.")
    if summary.skipped:
        log.warning("Profiles skipped: %s", " ".join(summary.skipped))
    if summary.succeeded:
        log.info("Profiles succeeded: %s", " ".join(summary.succeeded))
    return summary
