"""badge_etl.shared

Report helpers shared by every CLI mode: the JSON run-report artifact and
the plain-text summaries echoed to the operator.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

DEFAULT_REPORTS_DIR = Path("./artifacts/reports")


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    params: Mapping[str, Any],
    counters: Mapping[str, Any],
    reports_dir: Path = DEFAULT_REPORTS_DIR,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **params,
        "counters": dict(counters),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path


# ---------------------------------------------------------------------------
# Text reports
# ---------------------------------------------------------------------------

def build_report(
    title: str,
    sections: Mapping[str, Mapping[str, Any]],
    warnings: list[str] | None = None,
) -> str:
    """Render ``=== title ===`` followed by aligned ``key : value`` sections."""
    width = max(
        (len(k) for fields in sections.values() for k in fields), default=0
    )
    lines = [f"=== {title} ==="]
    for name, fields in sections.items():
        lines += ["", f"--- {name} ---"]
        lines += [f"{k.ljust(width)} : {v}" for k, v in fields.items()]
    if warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in warnings[:10]]
    return "\n".join(lines)


def build_ingestion_report(result: Mapping[str, Any], warnings: list[str] | None = None) -> str:
    return build_report(
        "Portal Ingestion Run Report",
        {
            "Run": {
                "status": result.get("status"),
                "scraping_log_id": result.get("log_id"),
                "attempts": result.get("attempts"),
            },
            "Visits": {
                "found": result.get("found"),
                "added": result.get("added"),
                "already_stored": result.get("duplicates"),
            },
        },
        warnings,
    )


def build_stats_report(stats: Mapping[str, Any]) -> str:
    season = stats["season"]
    proj = stats["projections"]
    ends = stats["end_dates"]
    sections: dict[str, Mapping[str, Any]] = {
        "Visits": {
            "total": stats["total_visits"],
            "manual": stats["manual_visits"],
            "days_elapsed": stats["days_elapsed"],
            "visits_per_day": stats["visit_rate"],
            "visits_per_week": stats["visit_rate_per_week"],
        },
        "Projections": {
            f"conservative ({ends['conservative']})": proj["conservative_total"],
            f"average ({ends['average']})": proj["average_total"],
            f"optimistic ({ends['optimistic']})": proj["optimistic_total"],
            **(
                {"custom": proj["custom_total"]}
                if proj.get("custom_total") is not None else {}
            ),
            "remaining_days": proj["remaining_days"],
        },
        "Goal": {
            "goal": stats["goal"],
            "remaining": stats["goal_remaining"],
            "progress_pct": stats["goal_pct"],
        },
    }
    breakdown = stats.get("breakdown")
    if breakdown:
        if breakdown["weekly"]:
            sections["Visits per week (Sunday start)"] = breakdown["weekly"]
        temps = breakdown["temperature"]
        sections["Temperature"] = {
            **{r["range"]: r["count"] for r in temps["ranges"]},
            "sweet_spot": temps["sweet_spot"],
            "with_weather_data": f"{temps['with_weather_data']}/{temps['total_visits']}",
        }
    return build_report(f"{season['name']} ({season['status']})", sections)
