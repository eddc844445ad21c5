"""Task: AWS blended cost by service, month-to-date or over the last month.

Cost Explorer results are flattened into a pandas DataFrame (one row per
service per result period) that feeds both the fixed-width text table and the
optional plotly bar chart.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import plotly.graph_objects as go

from aws_tasks.common import _logger
from core.retry import aws_retry

COLUMNS = ["Service", "Unit", "Amount", "Start"]
ROW_FORMAT = "%-50s %-5s %s"


@dataclass(frozen=True)
class CostPeriod:
    what: str
    start: date
    end: date


def _same_day_last_month(day: date) -> date:
    """Same day-of-month one month back, clamped to that month's length."""
    prev_month_end = day.replace(day=1) - timedelta(days=1)
    return prev_month_end.replace(day=min(day.day, prev_month_end.day))


def cost_period(period: str, today: Optional[date] = None) -> CostPeriod:
    """Resolve 'mtd' or 'month' into a Cost Explorer time period."""
    today = today or date.today()
    if period == "mtd":
        start = today.replace(day=1)
        if start == today:
            raise ValueError("Month to date is empty on the first day of the month; use 'month'")
        return CostPeriod("Month to Date", start, today)
    if period == "month":
        return CostPeriod("One Month", _same_day_last_month(today), today)
    raise ValueError(f"Invalid period {period!r}. Specify mtd or month")


@aws_retry
def _get_cost_and_usage(ce, **kwargs: Any) -> Dict[str, Any]:
    return ce.get_cost_and_usage(**kwargs)


def cost_by_service(
    ce,
    period: CostPeriod,
    *,
    logger: Optional[logging.Logger] = None,
) -> pd.DataFrame:
    """BlendedCost grouped by SERVICE for the period, following NextPageToken."""
    log = _logger(logger)
    rows: List[Dict[str, str]] = []
    token: Optional[str] = None
    while True:
        kwargs: Dict[str, Any] = {
            "TimePeriod": {"Start": period.start.isoformat(), "End": period.end.isoformat()},
            "Granularity": "MONTHLY",
            "Metrics": ["BlendedCost"],
            "GroupBy": [{"Type": "DIMENSION", "Key": "SERVICE"}],
        }
        if token:
            kwargs["NextPageToken"] = token
        resp = _get_cost_and_usage(ce, **kwargs)
        for result in resp.get("ResultsByTime", []) or []:
            start = (result.get("TimePeriod") or {}).get("Start", "")
            for group in result.get("Groups", []) or []:
                metric = (group.get("Metrics") or {}).get("BlendedCost") or {}
                rows.append(
                    {
                        "Service": ",".join(group.get("Keys") or []),
                        "Unit": str(metric.get("Unit", "")),
                        "Amount": str(metric.get("Amount", "")),
                        "Start": start,
                    }
                )
        token = resp.get("NextPageToken")
        if not token:
            break
    log.info("[cost_by_service] %d row(s) for %s => %s", len(rows), period.start, period.end)
    return pd.DataFrame(rows, columns=COLUMNS)


def render_cost_table(frame: pd.DataFrame, period: CostPeriod) -> List[str]:
    lines = [
        "###",
        f"# AWS Blended Costs by Service: {period.what} ({period.start} => {period.end})",
        "###",
        "",
        ROW_FORMAT % ("Service", "Unit", "Blended Cost"),
    ]
    for row in frame.itertuples(index=False):
        lines.append(ROW_FORMAT % (row.Service, row.Unit, row.Amount))
    return lines


def build_cost_chart(frame: pd.DataFrame, period: CostPeriod) -> go.Figure:
    """Bar chart: total blended cost per service over the period."""
    costs = pd.to_numeric(frame["Amount"], errors="coerce").fillna(0.0)
    grouped = costs.groupby(frame["Service"]).sum().sort_values(ascending=False)
    unit = frame["Unit"].iloc[0] if not frame.empty else "USD"
    fig = go.Figure(
        data=[
            go.Bar(
                x=grouped.index.tolist(),
                y=grouped.values.tolist(),
                hovertemplate="%{x}: %{y:.2f}<extra></extra>",
            )
        ]
    )
    fig.update_layout(
        title=f"AWS Blended Costs by Service: {period.what} ({period.start} => {period.end})",
        xaxis={"title": "Service", "tickangle": -30},
        yaxis={"title": unit},
        margin={"l": 60, "r": 40, "t": 50, "b": 120},
    )
    return fig


def write_cost_html(frame: pd.DataFrame, period: CostPeriod, path: Path) -> Path:
    fig = build_cost_chart(frame, period)
    path.write_text(fig.to_html(full_html=True, include_plotlyjs="cdn"), encoding="utf-8")
    return path
