"""Ledger of scheduled billing job runs."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, insert

from subscription_billing.core.database import get_db_session, billing_job_runs


def record_job_run(
    job_name: str,
    started_at: datetime,
    stats: Dict[str, Any],
    status: str = "success",
    finished_at: Optional[datetime] = None,
) -> None:
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=job_name,
                started_at=started_at,
                finished_at=finished_at or datetime.now(timezone.utc),
                status=status,
                stats_json=json.dumps(stats, default=str),
            )
        )


def list_job_runs(job_name: str, limit: int = 20) -> List[Dict[str, Any]]:
    with get_db_session() as session:
        rows = session.execute(
            select(billing_job_runs)
            .where(billing_job_runs.c.job_name == job_name)
            .order_by(billing_job_runs.c.id.desc())
            .limit(limit)
        ).fetchall()
        return [
            {
                "job_name": r.job_name,
                "started_at": r.started_at,
                "finished_at": r.finished_at,
                "status": r.status,
                "stats": json.loads(r.stats_json) if r.stats_json else {},
            }
            for r in rows
        ]
