"""
Exception types shared by the toolkit tasks.
"""
from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple


class OpsToolkitError(Exception):
    """Base class for every error the toolkit raises on purpose."""


class ConfigError(OpsToolkitError):
    """Invalid or unusable configuration (bad YAML, unreadable credentials file...)."""


class ConsistencyError(OpsToolkitError):
    """The grant decision phase contradicted itself; nothing may be revoked."""

    def __init__(
        self,
        message: str,
        *,
        principal_arn: Optional[str] = None,
        grant_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.principal_arn = principal_arn
        self.grant_id = grant_id


class MissingPrincipalError(OpsToolkitError):
    """One or more grants carry no principal and cannot be grouped."""

    def __init__(self, records: Sequence[Any]) -> None:
        self.records: Tuple[Any, ...] = tuple(records)
        ids = ", ".join(getattr(r, "grant_id", str(r)) for r in self.records)
        super().__init__(f"{len(self.records)} grant(s) without a principal: {ids}")


class RotationAbortedError(OpsToolkitError):
    """Access key rotation stopped half-way and needs manual attention."""

    def __init__(self, profile: str, message: str) -> None:
        super().__init__(f"[{profile}] {message}")
        self.profile = profile


class StsError(OpsToolkitError):
    """An STS request failed or returned unusable credentials."""


class MfaError(StsError):
    """MFA authentication failed."""
