"""Task: prune stale KMS grants, keeping the newest grant per principal.

Services such as Lambda create a new grant on a customer-managed key every
time a function version is published, and never revoke the old one. This task
lists every grant on a key, groups them by the principal recorded in the
grant's encryption-context constraint (``aws:lambda:FunctionArn`` by default),
keeps the most recently created grant of each group and revokes the others.

The decision phase (:func:`select_retention`) is pure and all-or-nothing: any
inconsistency raises before a single revocation is attempted. The mutation
phase is best-effort per grant and reports one outcome per revocation.
"""

from __future__ import annotations

import concurrent.futures as cf
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from aws_tasks.common import (
    BOLD,
    GREEN,
    RED,
    YELLOW,
    _echo,
    _logger,
    epoch_seconds,
    format_local_time,
    paint,
)
from core.errors import ConsistencyError, MissingPrincipalError
from core.retry import give_up_on_final_errors, retry_with_backoff
from ops_toolkit.config import LAMBDA_CONTEXT_KEY


# ------------------------------- data model -------------------------------- #

@dataclass(frozen=True)
class GrantRecord:
    """One KMS grant, decoded once from the ListGrants response."""

    created_at: int
    grant_id: str
    principal_arn: str

    @classmethod
    def from_grant(
        cls,
        grant: Mapping[str, Any],
        context_key: str = LAMBDA_CONTEXT_KEY,
    ) -> "GrantRecord":
        """Decode a ListGrants item; a missing principal becomes ''."""
        grant_id = str(grant.get("GrantId") or "")
        if not grant_id:
            raise ValueError("grant without GrantId")
        constraints = grant.get("Constraints") or {}
        context = constraints.get("EncryptionContextEquals") or {}
        principal = str(context.get(context_key) or "").strip()
        return cls(
            created_at=epoch_seconds(grant.get("CreationDate")),
            grant_id=grant_id,
            principal_arn=principal,
        )


@dataclass(frozen=True)
class RetentionDecision:
    """What to do with the grants of one principal."""

    principal_arn: str
    keep: GrantRecord
    revoke: Tuple[GrantRecord, ...] = ()


class RetentionPlan(Mapping[str, RetentionDecision]):
    """Read-only mapping principal -> decision, plus the ungroupable records."""

    def __init__(
        self,
        decisions: Mapping[str, RetentionDecision],
        anomalies: Sequence[GrantRecord] = (),
    ) -> None:
        self._decisions = dict(decisions)
        self.anomalies: Tuple[GrantRecord, ...] = tuple(anomalies)

    def __getitem__(self, principal_arn: str) -> RetentionDecision:
        return self._decisions[principal_arn]

    def __iter__(self) -> Iterator[str]:
        return iter(self._decisions)

    def __len__(self) -> int:
        return len(self._decisions)

    def __repr__(self) -> str:
        return f"RetentionPlan({self._decisions!r}, anomalies={self.anomalies!r})"

    def revocations(self) -> List[GrantRecord]:
        """Every revoke candidate, principal by principal."""
        return [rec for decision in self._decisions.values() for rec in decision.revoke]


# ----------------------------- decision phase ------------------------------ #

def _latest_by_principal(records: Iterable[GrantRecord]) -> Dict[str, GrantRecord]:
    """Running maximum per principal.

    Equal creation times are resolved by the lexically greatest grant id so
    the choice does not depend on listing order.
    """
    latest: Dict[str, GrantRecord] = {}
    for rec in records:
        current = latest.get(rec.principal_arn)
        if current is None or (rec.created_at, rec.grant_id) > (current.created_at, current.grant_id):
            latest[rec.principal_arn] = rec
    return latest


def _classify(
    ordered: Sequence[GrantRecord],
    latest: Mapping[str, GrantRecord],
) -> Dict[str, RetentionDecision]:
    revoke: Dict[str, List[GrantRecord]] = {principal: [] for principal in latest}
    for rec in ordered:
        keep = latest.get(rec.principal_arn)
        if keep is None or rec.created_at > keep.created_at:
            raise ConsistencyError(
                f"Grant {rec.grant_id} for {rec.principal_arn!r} (created {rec.created_at}) "
                f"is newer than the tracked latest grant "
                f"({keep.created_at if keep else 'none'}); refusing to continue",
                principal_arn=rec.principal_arn,
                grant_id=rec.grant_id,
            )
        if rec.grant_id == keep.grant_id:
            continue
        revoke[rec.principal_arn].append(rec)
    return {
        principal: RetentionDecision(principal, latest[principal], tuple(revoke[principal]))
        for principal in sorted(latest)
    }


def select_retention(
    records: Iterable[GrantRecord],
    *,
    strict: bool = False,
) -> RetentionPlan:
    """Decide, per principal, the single grant to keep and the grants to revoke.

    Records without a principal are not grouped: they are returned in
    ``plan.anomalies`` (or raise :class:`MissingPrincipalError` when ``strict``).
    Revoke lists are ascending by creation time, ties in input order.

    Raises:
        MissingPrincipalError: strict mode and at least one record has no principal.
        ConsistencyError: duplicate grant ids, or a record newer than the
            computed latest for its principal. The plan is discarded.
    """
    items = list(records)
    anomalies = [rec for rec in items if not (rec.principal_arn or "").strip()]
    if anomalies and strict:
        raise MissingPrincipalError(anomalies)

    seen: Dict[str, GrantRecord] = {}
    for rec in items:
        if rec.grant_id in seen:
            raise ConsistencyError(
                f"Grant id {rec.grant_id} appears more than once in the listing",
                grant_id=rec.grant_id,
            )
        seen[rec.grant_id] = rec

    # sorted() is stable, so equal timestamps keep their input order
    ordered = sorted(
        (rec for rec in items if (rec.principal_arn or "").strip()),
        key=lambda rec: rec.created_at,
    )
    latest = _latest_by_principal(ordered)
    return RetentionPlan(_classify(ordered, latest), anomalies)


def decode_grants(
    grants: Iterable[Mapping[str, Any]],
    context_key: str = LAMBDA_CONTEXT_KEY,
) -> List[GrantRecord]:
    """Decode raw ListGrants items; an undecodable item aborts the decision phase."""
    out: List[GrantRecord] = []
    for grant in grants:
        try:
            out.append(GrantRecord.from_grant(grant, context_key))
        except (TypeError, ValueError) as exc:
            raise ConsistencyError(
                f"Cannot decode grant {grant.get('GrantId')!r}: {exc}",
                grant_id=grant.get("GrantId"),
            ) from exc
    return out


# ------------------------------- reporting --------------------------------- #

def render_plan(plan: RetentionPlan) -> List[str]:
    """Human-readable plan, one line per kept/revoked grant."""
    lines: List[str] = []
    for principal, decision in plan.items():
        lines.append(paint(f"Principal: {principal}", BOLD))
        lines.append(paint(f"\tKeeping:\t{format_local_time(decision.keep.created_at)}", GREEN))
        for rec in decision.revoke:
            lines.append(
                paint(
                    f"\tDeleting:\t{format_local_time(rec.created_at)} (Grant ID: {rec.grant_id})",
                    RED,
                )
            )
    if plan.anomalies:
        lines.append(paint("Grants without a principal (not grouped, left alone):", BOLD))
        for rec in plan.anomalies:
            lines.append(
                paint(
                    f"\tAnomaly:\t{format_local_time(rec.created_at)} (Grant ID: {rec.grant_id})",
                    YELLOW,
                )
            )
    return lines


# ------------------------------ mutation phase ------------------------------ #

REVOKED = "revoked"
DRY_RUN = "dry-run"
FAILED = "failed"


@dataclass(frozen=True)
class RevocationOutcome:
    """Result of one revocation attempt."""

    grant_id: str
    principal_arn: str
    created_at: int
    status: str
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.status != FAILED


@dataclass
class PruneResult:
    """Decision plus per-grant outcomes of one run."""

    key_arn: str
    plan: RetentionPlan
    outcomes: List[RevocationOutcome] = field(default_factory=list)

    @property
    def failed(self) -> List[RevocationOutcome]:
        return [o for o in self.outcomes if not o.ok]


@retry_with_backoff(exceptions=(ClientError, BotoCoreError), giveup=give_up_on_final_errors)
def list_key_grants(kms, key_arn: str) -> List[Dict[str, Any]]:
    """All grants on a key, across pages."""
    grants: List[Dict[str, Any]] = []
    paginator = kms.get_paginator("list_grants")
    for page in paginator.paginate(KeyId=key_arn):
        grants.extend(page.get("Grants", []) or [])
    return grants


def _revoke_one(
    kms,
    key_arn: str,
    rec: GrantRecord,
    *,
    execute: bool,
    tries: int,
    base_delay: float,
    log: logging.Logger,
) -> RevocationOutcome:
    if not execute:
        log.info("[prune_key_grants] Dry-run: would revoke %s (%s)", rec.grant_id, rec.principal_arn)
        return RevocationOutcome(rec.grant_id, rec.principal_arn, rec.created_at, DRY_RUN)

    revoke = retry_with_backoff(
        exceptions=(ClientError, BotoCoreError),
        tries=tries,
        base_delay=base_delay,
        logger=log,
        giveup=give_up_on_final_errors,
    )(kms.revoke_grant)
    try:
        revoke(KeyId=key_arn, GrantId=rec.grant_id)
    except (ClientError, BotoCoreError) as exc:
        log.error("[prune_key_grants] Failed to revoke %s: %s", rec.grant_id, exc)
        return RevocationOutcome(rec.grant_id, rec.principal_arn, rec.created_at, FAILED, str(exc))
    log.info("[prune_key_grants] Revoked %s (%s)", rec.grant_id, rec.principal_arn)
    return RevocationOutcome(rec.grant_id, rec.principal_arn, rec.created_at, REVOKED)


def revoke_grants(
    kms,
    key_arn: str,
    candidates: Sequence[GrantRecord],
    *,
    execute: bool = False,
    max_workers: int = 1,
    tries: int = 4,
    base_delay: float = 0.5,
    logger: Optional[logging.Logger] = None,
) -> List[RevocationOutcome]:
    """Revoke every candidate independently; outcomes keep the candidates' order."""
    log = _logger(logger)

    def _one(rec: GrantRecord) -> RevocationOutcome:
        return _revoke_one(
            kms, key_arn, rec, execute=execute, tries=tries, base_delay=base_delay, log=log
        )

    if max_workers <= 1 or len(candidates) <= 1:
        return [_one(rec) for rec in candidates]
    with cf.ThreadPoolExecutor(max_workers=max_workers) as pool:
        return list(pool.map(_one, candidates))


def prune_key_grants(
    kms,
    key_arn: str,
    *,
    context_key: str = LAMBDA_CONTEXT_KEY,
    execute: bool = False,
    strict: bool = False,
    max_workers: int = 1,
    tries: int = 4,
    base_delay: float = 0.5,
    logger: Optional[logging.Logger] = None,
) -> PruneResult:
    """List, decide, report, then revoke (dry-run unless ``execute``).

    Errors from the decision phase propagate and nothing is revoked.
    """
    log = _logger(logger)
    if not key_arn:
        raise ValueError("A KMS key ARN or id is required")

    log.info("Getting all grants for key %s, this might take a moment...", key_arn)
    grants = list_key_grants(kms, key_arn)
    log.info("Found %d grant(s) on %s", len(grants), key_arn)

    plan = select_retention(decode_grants(grants, context_key), strict=strict)
    for rec in plan.anomalies:
        log.warning(
            "[prune_key_grants] Grant %s has no '%s' context value; left untouched",
            rec.grant_id, context_key,
        )

    for line in render_plan(plan):
        _echo(line)

    candidates = plan.revocations()
    outcomes = revoke_grants(
        kms,
        key_arn,
        candidates,
        execute=execute,
        max_workers=max_workers,
        tries=tries,
        base_delay=base_delay,
        logger=log,
    )
    result = PruneResult(key_arn=key_arn, plan=plan, outcomes=outcomes)
    log.info(
        "[prune_key_grants] principals=%d candidates=%d failed=%d execute=%s",
        len(plan), len(candidates), len(result.failed), execute,
    )
    return result
