"""Task: root volume sizes of the EC2 instances of one environment/project."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from aws_tasks.common import _logger, iter_chunks, tags_to_dict
from core.retry import aws_retry
from ops_toolkit.config import DEFAULT_ROOT_DEVICE

_DESCRIBE_VOLUMES_CHUNK = 200
_LEADING_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)")


@dataclass(frozen=True)
class RootVolume:
    name: str
    instance_id: str
    volume_id: str
    size_gb: Optional[int] = None


def _root_volume_id(instance: Dict[str, Any], fallback_device: str) -> Optional[str]:
    mappings = instance.get("BlockDeviceMappings") or []
    devices = [instance.get("RootDeviceName") or fallback_device, fallback_device]
    for device in devices:
        for mapping in mappings:
            ebs = mapping.get("Ebs") or {}
            if mapping.get("DeviceName") == device and ebs.get("VolumeId"):
                return ebs["VolumeId"]
    return None


def _name_sort_key(name: str) -> Tuple[str, float, str]:
    """'web-10' sorts after 'web-9': first field as text, second numerically."""
    parts = name.split("-", 2)
    match = _LEADING_NUMBER.match(parts[1]) if len(parts) > 1 else None
    return parts[0], float(match.group(1)) if match else 0.0, name


@aws_retry
def _describe_instances(ec2, filters: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    instances: List[Dict[str, Any]] = []
    paginator = ec2.get_paginator("describe_instances")
    for page in paginator.paginate(Filters=filters):
        for reservation in page.get("Reservations", []) or []:
            instances.extend(reservation.get("Instances", []) or [])
    return instances


@aws_retry
def _volume_sizes(ec2, volume_ids: Iterable[str]) -> Dict[str, int]:
    sizes: Dict[str, int] = {}
    for chunk in iter_chunks(sorted(set(volume_ids)), _DESCRIBE_VOLUMES_CHUNK):
        resp = ec2.describe_volumes(VolumeIds=chunk)
        for vol in resp.get("Volumes", []) or []:
            if vol.get("VolumeId") and vol.get("Size") is not None:
                sizes[vol["VolumeId"]] = int(vol["Size"])
    return sizes


def root_volume_sizes(
    ec2,
    environment: str,
    project: str,
    *,
    root_device: str = DEFAULT_ROOT_DEVICE,
    environment_tag: str = "environment",
    project_tag: str = "project",
    logger: Optional[logging.Logger] = None,
) -> List[RootVolume]:
    """Root EBS volumes (with size) for instances tagged with environment and project."""
    log = _logger(logger)
    filters = [
        {"Name": f"tag:{environment_tag}", "Values": [environment]},
        {"Name": f"tag:{project_tag}", "Values": [project]},
    ]
    found: List[RootVolume] = []
    for inst in _describe_instances(ec2, filters):
        instance_id = inst.get("InstanceId", "")
        volume_id = _root_volume_id(inst, root_device)
        if not volume_id:
            log.debug("[root_volume_sizes] %s has no EBS root volume; skipped", instance_id)
            continue
        name = tags_to_dict(inst.get("Tags")).get("Name", "")
        found.append(RootVolume(name=name, instance_id=instance_id, volume_id=volume_id))

    sizes = _volume_sizes(ec2, [rv.volume_id for rv in found]) if found else {}
    rows = [
        RootVolume(rv.name, rv.instance_id, rv.volume_id, sizes.get(rv.volume_id))
        for rv in found
    ]
    rows.sort(key=lambda rv: _name_sort_key(rv.name))
    log.info("[root_volume_sizes] %d instance(s) in %s/%s", len(rows), environment, project)
    return rows


def render_root_volumes(rows: List[RootVolume]) -> List[str]:
    rule = "#" * 78
    lines = [
        "",
        "EBS Root Volume Sizes",
        "",
        rule,
        f"| {'Name':<30} | {'Instance':<19} | {'Volume Id':<21} | Size |",
        rule,
    ]
    for rv in rows:
        size = "" if rv.size_gb is None else str(rv.size_gb)
        lines.append(f"  {rv.name:<30}   {rv.instance_id:<19}   {rv.volume_id:<21}   {size}")
    return lines
