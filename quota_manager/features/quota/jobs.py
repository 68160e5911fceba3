"""Bookkeeping for scheduled quota jobs (expiry passes, reconciliation)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import insert, select

from quota_manager.core.database import get_db_session, quota_job_runs
from quota_manager.models.quota import as_utc, utc_now


def record_job_run(
    job_name: str,
    *,
    run_id: Optional[str],
    started_at: datetime,
    status: str,
    stats: Optional[Dict[str, Any]] = None,
    finished_at: Optional[datetime] = None,
) -> None:
    with get_db_session() as session:
        session.execute(
            insert(quota_job_runs).values(
                job_name=job_name,
                run_id=run_id,
                started_at=as_utc(started_at),
                finished_at=as_utc(finished_at) or utc_now(),
                status=status,
                stats_json=stats,
            )
        )


def get_job_runs(job_name: str) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(quota_job_runs)
            .where(quota_job_runs.c.job_name == job_name)
            .order_by(quota_job_runs.c.id.asc())
        ).fetchall()
    return [
        {
            "run_id": row.run_id,
            "started_at": as_utc(row.started_at),
            "finished_at": as_utc(row.finished_at),
            "status": row.status,
            "stats": row.stats_json,
        }
        for row in rows
    ]
