"""
Per-job runtime journal: the append-only log table and the JobRuntime
counters. Both are best-effort; a failed write is reported and swallowed so
it can never abort the work that produced it.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

import config
import database
from models import Job, JobLog, utcnow

LEVELS = {"info": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}


def _jsonable(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not data:
        return None
    return json.loads(json.dumps(data, default=str))


class JobJournal:
    """Appends runtime log lines and updates runtime counters for one job."""

    def __init__(self, job_id: str, trace_id: Optional[str] = None, session_factory=None):
        self.job_id = job_id
        self.trace_id = trace_id
        self.session_factory = session_factory or database.ServiceSessionLocal

    # --- Log ---

    def log(self, level: str, message: str, **data) -> None:
        level = level if level in LEVELS else "info"
        payload = _jsonable(data)
        logging.log(
            LEVELS[level],
            f"[trendstory] job={self.job_id} trace={self.trace_id} {message}"
            + (f" {payload}" if payload else ""),
        )
        try:
            with self.session_factory() as db:
                db.add(JobLog(job_id=self.job_id, level=level, message=message, data=payload, ts=utcnow()))
                db.commit()
        except SQLAlchemyError as e:
            logging.warning(f"Could not append runtime log for job {self.job_id}: {e}")

    def info(self, message: str, **data) -> None:
        self.log("info", message, **data)

    def warn(self, message: str, **data) -> None:
        self.log("warn", message, **data)

    def error(self, message: str, **data) -> None:
        self.log("error", message, **data)

    # --- Runtime counters ---

    def update_runtime(self, mutate: Callable[[Dict[str, Any]], None]) -> Optional[Dict[str, Any]]:
        """Apply `mutate` to the runtime aggregate with compare-and-swap on runtime_version."""
        try:
            for _ in range(config.RUNTIME_CAS_ATTEMPTS):
                with self.session_factory() as db:
                    row = db.execute(
                        select(Job.runtime, Job.runtime_version).where(Job.id == self.job_id)
                    ).first()
                    if row is None:
                        return None
                    runtime = dict(row.runtime or {})
                    mutate(runtime)
                    result = db.execute(
                        update(Job)
                        .where(Job.id == self.job_id, Job.runtime_version == row.runtime_version)
                        .values(runtime=runtime, runtime_version=row.runtime_version + 1)
                    )
                    updated = result.rowcount
                    db.commit()
                    if updated == 1:
                        return runtime
            logging.warning(f"Runtime update for job {self.job_id} lost {config.RUNTIME_CAS_ATTEMPTS} races, giving up.")
        except SQLAlchemyError as e:
            logging.warning(f"Could not update runtime for job {self.job_id}: {e}")
        return None

    def set_runtime(self, **fields) -> Optional[Dict[str, Any]]:
        return self.update_runtime(lambda runtime: runtime.update(fields))

    def bump(self, **counters: int) -> Optional[Dict[str, Any]]:
        def mutate(runtime):
            for key, amount in counters.items():
                runtime[key] = int(runtime.get(key) or 0) + amount

        return self.update_runtime(mutate)
