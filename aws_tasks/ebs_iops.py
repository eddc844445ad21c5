"""Task: mean IOPS of one EBS volume over a window (default: the last 24 hours).

Read and write operation counts are summed over the whole window as a single
CloudWatch datapoint, then divided by the window length in seconds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from aws_tasks.common import _logger, _to_utc_iso
from core.cloudwatch import MetricReader, MetricWindow, stat_query


@dataclass(frozen=True)
class VolumeIops:
    volume_id: str
    start: datetime
    end: datetime
    period: int
    read_ops: int
    write_ops: int

    @property
    def total_ops(self) -> int:
        return self.read_ops + self.write_ops

    @property
    def iops(self) -> int:
        return self.total_ops // self.period


def volume_mean_iops(
    cloudwatch,
    volume_id: str,
    window: Optional[MetricWindow] = None,
    *,
    lookback_seconds: int = 86400,
    logger: Optional[logging.Logger] = None,
) -> VolumeIops:
    """Average IOPS for `volume_id` over `window` (or the trailing lookback)."""
    log = _logger(logger)
    if not volume_id:
        raise ValueError("An EBS volume id is required")
    win = window or MetricWindow.lookback(lookback_seconds)

    def _q(qid: str, metric: str):
        return stat_query(
            qid,
            namespace="AWS/EBS",
            metric_name=metric,
            dimensions={"VolumeId": volume_id},
            stat="Sum",
            period=win.query_period,
        )

    values = MetricReader(cloudwatch).window_values(
        [_q("read_ops", "VolumeReadOps"), _q("write_ops", "VolumeWriteOps")],
        win,
    )
    result = VolumeIops(
        volume_id=volume_id,
        start=win.start,
        end=win.end,
        period=win.seconds,
        read_ops=int(values["read_ops"]),
        write_ops=int(values["write_ops"]),
    )
    log.info(
        "[volume_mean_iops] %s read=%d write=%d period=%ds iops=%d",
        volume_id, result.read_ops, result.write_ops, result.period, result.iops,
    )
    return result


def render_volume_iops(result: VolumeIops) -> List[str]:
    return [
        f"Volume:\t\t{result.volume_id}",
        f"Start:\t\t{_to_utc_iso(result.start)}",
        f"End:\t\t{_to_utc_iso(result.end)}",
        f"Period (s):\t{result.period}",
        "",
        f"Average IOPS:\t{result.iops}",
    ]
