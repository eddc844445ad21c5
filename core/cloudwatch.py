"""CloudWatch `GetMetricData` helpers for the window reports.

A report asks for one statistic per metric over a whole window. The window is
a single datapoint (`MetricWindow.query_period`), so each query normally comes
back with one value:

    window = MetricWindow.lookback(86400)
    reader = MetricReader(boto3.client("cloudwatch"))
    values = reader.window_values(
        [stat_query("reads", namespace="AWS/EBS", metric_name="VolumeReadOps",
                    dimensions={"VolumeId": "vol-123"}, stat="Sum",
                    period=window.query_period)],
        window,
    )

Queries are sent in batches of at most 500 (the API limit), `NextToken` pages
are followed, and throttled calls are retried with `core.retry`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from botocore.exceptions import ClientError

from core.retry import THROTTLING_CODES, retry_with_backoff

MAX_QUERIES_PER_CALL = 500

# Periods above one minute must be multiples of 60 seconds.
PERIOD_STEP = 60


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class MetricWindow:
    """A [start, end) reporting window treated as a single datapoint."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _as_utc(self.start))
        object.__setattr__(self, "end", _as_utc(self.end))
        if self.seconds <= 0:
            raise ValueError(
                f"Window end ({self.end.isoformat()}) must be after start ({self.start.isoformat()})"
            )

    @classmethod
    def lookback(cls, seconds: int, now: Optional[datetime] = None) -> "MetricWindow":
        """Window of `seconds` ending at `now` (defaults to the current UTC time)."""
        end = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        return cls(start=end - timedelta(seconds=int(seconds)), end=end)

    @property
    def seconds(self) -> int:
        return int((self.end - self.start).total_seconds())

    @property
    def query_period(self) -> int:
        """Window length rounded up to the next valid CloudWatch period."""
        steps = -(-max(self.seconds, PERIOD_STEP) // PERIOD_STEP)
        return steps * PERIOD_STEP


def stat_query(
    qid: str,
    *,
    namespace: str,
    metric_name: str,
    dimensions: Mapping[str, str],
    stat: str,
    period: int,
    unit: Optional[str] = None,
) -> Dict[str, Any]:
    """One `MetricDataQueries` entry for a single statistic."""
    metric = {
        "Namespace": namespace,
        "MetricName": metric_name,
        "Dimensions": [{"Name": name, "Value": value} for name, value in dimensions.items()],
    }
    metric_stat: Dict[str, Any] = {"Metric": metric, "Period": int(period), "Stat": stat}
    if unit:
        metric_stat["Unit"] = unit
    return {"Id": qid, "MetricStat": metric_stat, "ReturnData": True}


def _not_throttled(exc: BaseException) -> bool:
    code = (getattr(exc, "response", None) or {}).get("Error", {}).get("Code", "")
    return code not in THROTTLING_CODES


class MetricReader:
    """Runs `GetMetricData` for a list of queries and collects values per Id."""

    def __init__(
        self,
        client,
        *,
        batch_size: int = MAX_QUERIES_PER_CALL,
        tries: int = 3,
        base_delay: float = 0.5,
    ) -> None:
        self._cw = client
        self._batch_size = max(1, min(int(batch_size), MAX_QUERIES_PER_CALL))
        self._call = retry_with_backoff(
            exceptions=(ClientError,),
            tries=max(1, int(tries)),
            base_delay=base_delay,
            giveup=_not_throttled,
        )(self._cw.get_metric_data)

    def fetch(
        self,
        queries: List[Dict[str, Any]],
        start: datetime,
        end: datetime,
    ) -> Dict[str, List[float]]:
        """Values per query Id (possibly empty), merged across batches and pages."""
        values: Dict[str, List[float]] = {q["Id"]: [] for q in queries}
        for first in range(0, len(queries), self._batch_size):
            batch = queries[first : first + self._batch_size]
            token: Optional[str] = None
            while True:
                params: Dict[str, Any] = {
                    "MetricDataQueries": batch,
                    "StartTime": start,
                    "EndTime": end,
                    "ScanBy": "TimestampAscending",
                }
                if token:
                    params["NextToken"] = token
                page = self._call(**params)
                for result in page.get("MetricDataResults", []) or []:
                    if result.get("Id") in values:
                        values[result["Id"]].extend(float(v) for v in result.get("Values") or [])
                token = page.get("NextToken")
                if not token:
                    break
        return values

    def window_values(
        self,
        queries: List[Dict[str, Any]],
        window: MetricWindow,
    ) -> Dict[str, float]:
        """One number per query Id for the window; 0.0 when there is no datapoint.

        If CloudWatch still splits the window, `Sum` values are added up and
        any other statistic is averaged.
        """
        stats = {q["Id"]: q["MetricStat"]["Stat"] for q in queries}
        out: Dict[str, float] = {}
        for qid, vals in self.fetch(queries, window.start, window.end).items():
            if not vals:
                out[qid] = 0.0
            elif stats[qid] == "Sum":
                out[qid] = sum(vals)
            else:
                out[qid] = sum(vals) / len(vals)
        return out
