#!/usr/bin/env python3
"""Operator CLI for the AWS ops toolkit.

Every subcommand is read-only or dry-run unless stated otherwise:

  prune-grants   revoke stale KMS grants, keeping the newest per principal
                 (dry-run by default, ``--execute`` to revoke)
  volume-iops    mean IOPS of one EBS volume
  rds-transfer   estimated network transfer of one RDS instance
  costs          blended cost by service (``--html`` writes a chart)
  root-volumes   EC2 root volume sizes for an environment/project
  rotate-keys    interactive IAM access key rotation (writes credentials)
  mfa            print ``export`` lines for an MFA session
  assume-role    print ``export`` lines for an assumed role
  unset-sts      print ``unset`` lines for every STS variable
  status         one-line summary of the shell's AWS identity

Exit codes: 0 success, 1 task failure, 2 usage or configuration error.
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import boto3  # type: ignore
from botocore.exceptions import BotoCoreError, ClientError  # type: ignore

from aws_tasks import config as task_config
from aws_tasks.access_keys import rotate_profiles
from aws_tasks.costs import cost_by_service, cost_period, render_cost_table, write_cost_html
from aws_tasks.ebs_iops import render_volume_iops, volume_mean_iops
from aws_tasks.ec2_root_volumes import render_root_volumes, root_volume_sizes
from aws_tasks.kms_grants import prune_key_grants
from aws_tasks.rds_transfer import render_rds_transfer, rds_network_transfer
from aws_tasks.sts_session import (
    StsCredentials,
    assume_role,
    credentials_env,
    export_lines,
    mfa_session,
    session_status,
    unset_lines,
    unset_sts,
)
from core.cloudwatch import MetricWindow
from core.errors import ConfigError, OpsToolkitError
from ops_toolkit.config import ToolkitConfig, load_config, make_client, make_session
from ops_toolkit.logs import configure_logging

Handler = Callable[[argparse.Namespace, ToolkitConfig, logging.Logger], int]


class UsageError(Exception):
    """Missing or contradictory command line input."""


def _prompt_stderr(prompt: str) -> str:
    """Prompt on stderr so stdout stays clean for ``eval``."""
    sys.stderr.write(prompt)
    sys.stderr.flush()
    return sys.stdin.readline().rstrip("\n")


def _parse_time(value: str) -> datetime:
    """argparse type: ISO-8601 timestamp, UTC when no offset is given."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 time: {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _window(args: argparse.Namespace, lookback: int) -> MetricWindow:
    """Explicit --start/--end, either side defaulting from the lookback."""
    if args.start is None and args.end is None:
        return MetricWindow.lookback(args.lookback or lookback)
    end = args.end or datetime.now(timezone.utc).replace(microsecond=0)
    start = args.start or end - timedelta(seconds=args.lookback or lookback)
    return MetricWindow(start=start, end=end)


def _echo_lines(lines: List[str]) -> None:
    for line in lines:
        task_config.ECHO(line)


# ------------------------------- subcommands -------------------------------- #

def _cmd_prune_grants(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    key_arn = args.key or cfg.kms.key_arn
    if not key_arn:
        raise UsageError("prune-grants needs a key (argument or kms.key_arn)")
    kms = make_client(make_session(cfg), "kms")
    result = prune_key_grants(
        kms,
        key_arn,
        context_key=args.context_key or cfg.kms.context_key,
        execute=args.execute,
        strict=args.strict or cfg.kms.strict_principals,
        max_workers=args.max_workers or cfg.kms.max_workers,
        logger=log,
    )
    if not args.execute and result.outcomes:
        log.info("Dry-run: %d grant(s) would be revoked. Re-run with --execute.", len(result.outcomes))
    for outcome in result.failed:
        log.error("Revocation failed for %s: %s", outcome.grant_id, outcome.error)
    return 1 if result.failed else 0


def _cmd_volume_iops(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    volume_id = args.volume or cfg.iops.volume_id
    if not volume_id:
        raise UsageError("volume-iops needs a volume id (argument or iops.volume_id)")
    cloudwatch = make_client(make_session(cfg), "cloudwatch")
    result = volume_mean_iops(
        cloudwatch, volume_id, _window(args, cfg.iops.lookback_seconds), logger=log
    )
    _echo_lines(render_volume_iops(result))
    return 0


def _cmd_rds_transfer(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    db_instance = args.db_instance or cfg.rds.db_instance
    if not db_instance:
        raise UsageError("rds-transfer needs a DB instance (argument or rds.db_instance)")
    cloudwatch = make_client(make_session(cfg), "cloudwatch")
    result = rds_network_transfer(
        cloudwatch, db_instance, _window(args, cfg.rds.lookback_seconds), logger=log
    )
    _echo_lines(render_rds_transfer(result))
    return 0


def _cmd_costs(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    period = cost_period(args.period)
    # Cost Explorer is only served from us-east-1
    ce = make_client(make_session(cfg), "ce", region="us-east-1")
    frame = cost_by_service(ce, period, logger=log)
    _echo_lines(render_cost_table(frame, period))
    if args.html:
        path = write_cost_html(frame, period, Path(args.html))
        log.info("Chart written to %s", path)
    return 0


def _cmd_root_volumes(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    ec2 = make_client(make_session(cfg), "ec2")
    rows = root_volume_sizes(
        ec2,
        args.environment,
        args.project,
        root_device=args.root_device or cfg.ec2.root_device,
        environment_tag=cfg.ec2.environment_tag,
        project_tag=cfg.ec2.project_tag,
        logger=log,
    )
    _echo_lines(render_root_volumes(rows))
    return 0


def _cmd_rotate_keys(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    def _mfa_session_for(profile: str) -> boto3.Session:
        base = boto3.Session(profile_name=profile, region_name=cfg.region)
        creds = mfa_session(base, _prompt_stderr, logger=log)
        return creds.session(cfg.region)

    rotate_profiles(
        args.profiles or cfg.keys.profiles,
        credentials_file=args.credentials_file or cfg.keys.credentials_file,
        session_factory=_mfa_session_for,
        confirm=_prompt_stderr,
        logger=log,
    )
    return 0


def _print_exports(creds: StsCredentials) -> None:
    for line in unset_lines():
        print(line)
    for line in export_lines(credentials_env(creds)):
        print(line)


def _cmd_mfa(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    # An existing STS session cannot call GetSessionToken; use the profile's own keys.
    unset_sts(os.environ)
    creds = mfa_session(make_session(cfg), _prompt_stderr, logger=log)
    _print_exports(creds)
    return 0


def _cmd_assume_role(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    creds = assume_role(
        make_session(cfg),
        args.role,
        args.account_id,
        session_name=args.session_name,
        logger=log,
    )
    _print_exports(creds)
    return 0


def _cmd_unset_sts(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    for line in unset_lines():
        print(line)
    return 0


def _cmd_status(args: argparse.Namespace, cfg: ToolkitConfig, log: logging.Logger) -> int:
    print(session_status(os.environ))
    return 0


HANDLERS: Dict[str, Handler] = {
    "prune-grants": _cmd_prune_grants,
    "volume-iops": _cmd_volume_iops,
    "rds-transfer": _cmd_rds_transfer,
    "costs": _cmd_costs,
    "root-volumes": _cmd_root_volumes,
    "rotate-keys": _cmd_rotate_keys,
    "mfa": _cmd_mfa,
    "assume-role": _cmd_assume_role,
    "unset-sts": _cmd_unset_sts,
    "status": _cmd_status,
}


# ------------------------------- arguments ---------------------------------- #

def _add_window_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", type=_parse_time, help="Window start (ISO-8601, UTC default).")
    parser.add_argument("--end", type=_parse_time, help="Window end (ISO-8601, default now).")
    parser.add_argument("--lookback", type=int, help="Window length in seconds.")


def _parse_args(argv: List[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="aws_ops",
        description="Operator utilities for AWS: KMS grant pruning, metrics, costs, keys, STS.",
    )
    parser.add_argument("--config", help="YAML file overlaid on the AWSOPS_* defaults.")
    parser.add_argument("--profile", help="AWS profile name.")
    parser.add_argument("--region", help="AWS region.")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging threshold (default INFO).",
    )
    parser.add_argument("--debug", action="store_true", help="Shorthand for --log-level DEBUG.")
    parser.add_argument("--no-colour", action="store_true", help="Plain console output.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("prune-grants", help="Revoke stale KMS grants (dry-run by default).")
    p.add_argument("key", nargs="?", help="KMS key ARN or id.")
    p.add_argument("--execute", action="store_true", help="Actually revoke the grants.")
    p.add_argument("--strict", action="store_true", help="Fail on grants without a principal.")
    p.add_argument("--context-key", help="Encryption context key naming the principal.")
    p.add_argument("--max-workers", type=int, help="Parallel revocations.")

    p = sub.add_parser("volume-iops", help="Mean IOPS of an EBS volume.")
    p.add_argument("volume", nargs="?", help="EBS volume id.")
    _add_window_args(p)

    p = sub.add_parser("rds-transfer", help="Estimated network transfer of an RDS instance.")
    p.add_argument("db_instance", nargs="?", help="DB instance identifier.")
    _add_window_args(p)

    p = sub.add_parser("costs", help="Blended cost by service.")
    p.add_argument("period", choices=["mtd", "month"], help="Month to date or the last month.")
    p.add_argument("--html", help="Also write a plotly bar chart to this HTML file.")

    p = sub.add_parser("root-volumes", help="EC2 root volume sizes.")
    p.add_argument("environment", help="Value of the environment tag.")
    p.add_argument("project", help="Value of the project tag.")
    p.add_argument("--root-device", help="Fallback root device name.")

    p = sub.add_parser("rotate-keys", help="Rotate IAM access keys of credential profiles.")
    p.add_argument("profiles", nargs="*", help="Profiles to rotate (default: all).")
    p.add_argument("--credentials-file", help="Shared credentials file.")

    sub.add_parser("mfa", help="Print export lines for an MFA session.")

    p = sub.add_parser("assume-role", help="Print export lines for an assumed role.")
    p.add_argument("role", help="Role name.")
    p.add_argument("account_id", nargs="?", help="Account id (default: the caller's).")
    p.add_argument("--session-name", help="Role session name (default: user-host).")

    sub.add_parser("unset-sts", help="Print unset lines for every STS variable.")
    sub.add_parser("status", help="Show the current AWS identity and session TTL.")
    return parser.parse_args(argv)


def _apply_overrides(cfg: ToolkitConfig, args: argparse.Namespace) -> ToolkitConfig:
    if args.profile:
        cfg.profile = args.profile
    if args.region:
        cfg.region = args.region
    if args.log_level:
        cfg.logging.level = args.log_level
    if args.debug:
        cfg.logging.debug = True
    if args.no_colour:
        cfg.logging.colour = False
    return cfg


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entrypoint."""
    args = _parse_args(argv if argv is not None else sys.argv[1:])
    try:
        cfg = _apply_overrides(load_config(args.config), args)
        log = configure_logging(cfg.logging)
    except ConfigError as exc:
        sys.stderr.write(f"[ERROR] {exc}\n")
        return 2

    task_config.setup(logger=log, colour=cfg.logging.colour)

    handler = HANDLERS[args.command]
    try:
        return handler(args, cfg, log)
    except (UsageError, ConfigError, ValueError) as exc:
        log.error("%s", exc)
        return 2
    except OpsToolkitError as exc:
        log.error("%s", exc)
        return 1
    except (ClientError, BotoCoreError) as exc:
        log.error("AWS error: %s", exc)
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
