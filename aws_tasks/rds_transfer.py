"""Task: rough network transfer volume of an RDS instance.

Average receive + transmit throughput (bytes/s) over the window, multiplied by
the window length. Replication traffic is assumed to be about equal to writes,
so the figure is an estimate, not a billing number.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from aws_tasks.common import _logger, _to_utc_iso
from core.cloudwatch import MetricReader, MetricWindow, stat_query

GIB = 1024 ** 3


@dataclass(frozen=True)
class RdsTransfer:
    db_instance: str
    start: datetime
    end: datetime
    period: int
    receive_bps: int
    transmit_bps: int

    @property
    def total_bytes(self) -> int:
        return (self.receive_bps + self.transmit_bps) * self.period

    @property
    def gib(self) -> int:
        return self.total_bytes // GIB


def rds_network_transfer(
    cloudwatch,
    db_instance: str,
    window: Optional[MetricWindow] = None,
    *,
    lookback_seconds: int = 2592000,
    logger: Optional[logging.Logger] = None,
) -> RdsTransfer:
    log = _logger(logger)
    if not db_instance:
        raise ValueError("A DB instance identifier is required")
    win = window or MetricWindow.lookback(lookback_seconds)

    queries = [
        stat_query(
            qid,
            namespace="AWS/RDS",
            metric_name=metric,
            dimensions={"DBInstanceIdentifier": db_instance},
            stat="Average",
            period=win.query_period,
        )
        for qid, metric in (
            ("rx", "NetworkReceiveThroughput"),
            ("tx", "NetworkTransmitThroughput"),
        )
    ]
    values = MetricReader(cloudwatch).window_values(queries, win)
    result = RdsTransfer(
        db_instance=db_instance,
        start=win.start,
        end=win.end,
        period=win.seconds,
        receive_bps=int(values["rx"]),
        transmit_bps=int(values["tx"]),
    )
    log.info(
        "[rds_network_transfer] %s rx=%dB/s tx=%dB/s period=%ds ~%dGiB",
        db_instance, result.receive_bps, result.transmit_bps, result.period, result.gib,
    )
    return result


def render_rds_transfer(result: RdsTransfer) -> List[str]:
    return [
        f"DB Instance:\t\t{result.db_instance}",
        f"Start:\t\t{_to_utc_iso(result.start)}",
        f"End:\t\t{_to_utc_iso(result.end)}",
        f"Period (s):\t{result.period}",
        "",
        f"Average BPS * Period (GiB):\t{result.gib}",
    ]
