"""
Batch continuation scheduler.

Bulk operations (regenerating missing images or audio) run in bounded time
slices. When a slice runs out of budget the unprocessed remainder is handed to
`requeue` with depth + 1, up to a maximum depth, so an arbitrarily long batch
finishes through a chain of short invocations.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

import config
import database

SUCCEEDED = "succeeded"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class BatchReport:
    depth: int
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: List[Any] = field(default_factory=list)
    requeued: bool = False
    stop_reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "depth": self.depth,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "remaining": len(self.remaining),
            "requeued": self.requeued,
            "stop_reason": self.stop_reason,
        }


class BatchContinuationScheduler:
    """Runs work items inside a wall-clock budget and requeues the remainder."""

    def __init__(
        self,
        requeue: Callable[[List[Any], int], None],
        journal=None,
        budget_seconds: Optional[float] = None,
        max_depth: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        credentials_valid: Callable[[], bool] = database.service_credentials_valid,
    ):
        self.requeue = requeue
        self.journal = journal
        self.budget_seconds = config.BATCH_MAX_RUNTIME_SECONDS if budget_seconds is None else budget_seconds
        self.max_depth = config.BATCH_MAX_DEPTH if max_depth is None else max_depth
        self.clock = clock
        self.credentials_valid = credentials_valid

    def _log(self, level: str, message: str, **data):
        if self.journal is not None:
            self.journal.log(level, message, **data)
        else:
            logging.log(logging.ERROR if level == "error" else logging.INFO, f"{message} {data}")

    def run(self, items: List[Any], process: Callable[[Any], str], depth: int = 0) -> BatchReport:
        """Process `items` in order; returns the report for this slice only."""
        report = BatchReport(depth=depth)
        started = self.clock()

        for index, item in enumerate(items):
            # The first item of a slice always runs so every slice makes progress.
            if index > 0 and self.clock() - started > self.budget_seconds:
                report.remaining = list(items[index:])
                self._log(
                    "warn", "Time budget exhausted, handing the rest to the next batch.",
                    depth=depth, budget_seconds=self.budget_seconds, remaining=len(report.remaining),
                )
                break

            try:
                outcome = process(item)
            except Exception as e:
                self._log("error", "Batch item failed.", depth=depth, error=str(e))
                outcome = FAILED

            if outcome == SKIPPED:
                report.skipped += 1
                continue
            report.attempted += 1
            if outcome == SUCCEEDED:
                report.succeeded += 1
            else:
                report.failed += 1

        if report.remaining:
            self._continue(report)
        else:
            report.stop_reason = "done"
        return report

    def _continue(self, report: BatchReport) -> None:
        if report.depth >= self.max_depth:
            report.stop_reason = "max_depth"
            self._log(
                "error", "Maximum continuation depth reached; remaining work is dropped.",
                depth=report.depth, max_depth=self.max_depth, remaining=len(report.remaining),
            )
            return
        if not self.credentials_valid():
            report.stop_reason = "missing_credentials"
            self._log(
                "error", "Service credential is missing or malformed; continuation chain stopped.",
                hint="Set SERVICE_DATABASE_URL to a valid database URL.",
                remaining=len(report.remaining),
            )
            return
        try:
            self.requeue(report.remaining, report.depth + 1)
        except Exception as e:
            report.stop_reason = "requeue_failed"
            self._log("error", "Could not queue the next batch.", error=str(e), remaining=len(report.remaining))
            return
        report.requeued = True
        report.stop_reason = "requeued"
        self._log("info", "Queued the next batch.", next_depth=report.depth + 1, remaining=len(report.remaining))
