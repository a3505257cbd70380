"""
Per-scene image generation claims.

A claim is a time-bounded lease on generating one scene's image. Claiming is a
compare-and-swap against the claim state read just before, so of any number of
concurrent claimers at most one wins. Completions are gated on the request id
that won the claim, so a late result from an abandoned attempt cannot overwrite
a newer one.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update

import config
import database
from models import IMAGE_FAILED, IMAGE_GENERATING, IMAGE_SUCCEEDED, Scene, SceneNotFound, utcnow


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def stale_before(now: Optional[datetime] = None, stale_seconds: Optional[int] = None) -> datetime:
    now = now or utcnow()
    seconds = config.SCENE_IMAGE_LOCK_STALE_SECONDS if stale_seconds is None else stale_seconds
    return now - timedelta(seconds=seconds)


def _is_null_safe_equal(column, value):
    return column.is_(None) if value is None else column == value


class SceneClaimManager:
    """Implements per-scene exclusive image-generation leasing."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or database.ServiceSessionLocal

    def read_claim(self, job_id: str, scene_index: int):
        with self.session_factory() as db:
            row = db.execute(
                select(Scene.id, Scene.image_gen_status, Scene.image_gen_request_id, Scene.image_gen_started_at)
                .where(Scene.job_id == job_id, Scene.scene_index == scene_index)
            ).first()
        if row is None:
            raise SceneNotFound(f"Scene {scene_index} of job {job_id} not found.")
        return row

    @staticmethod
    def can_claim(status: Optional[str], started_at: Optional[datetime], staleness: datetime) -> bool:
        if status != IMAGE_GENERATING:
            return True
        started_at = as_utc(started_at)
        return started_at is None or started_at < as_utc(staleness)

    def try_claim(self, job_id: str, scene_index: int, request_id: str, staleness: Optional[datetime] = None) -> bool:
        """Claim the scene for `request_id`; False means another live claim holds it."""
        staleness = staleness or stale_before()
        current = self.read_claim(job_id, scene_index)
        if not self.can_claim(current.image_gen_status, current.image_gen_started_at, staleness):
            return False
        return self._swap_claim(current, request_id)

    def _swap_claim(self, current, request_id: str) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                update(Scene)
                .where(
                    Scene.id == current.id,
                    _is_null_safe_equal(Scene.image_gen_status, current.image_gen_status),
                    _is_null_safe_equal(Scene.image_gen_request_id, current.image_gen_request_id),
                )
                .values(
                    image_gen_status=IMAGE_GENERATING,
                    image_gen_request_id=request_id,
                    image_gen_started_at=utcnow(),
                    image_gen_error=None,
                )
            )
            updated = result.rowcount
            db.commit()
        won = updated == 1
        if not won:
            logging.info(f"Lost scene claim race for scene row {current.id} (request {request_id}).")
        return won

    def mark_succeeded(self, job_id: str, scene_index: int, request_id: str, **image_fields) -> bool:
        return self._finish(job_id, scene_index, request_id, image_gen_status=IMAGE_SUCCEEDED, image_gen_error=None, **image_fields)

    def mark_failed(self, job_id: str, scene_index: int, request_id: str, error: str) -> bool:
        return self._finish(job_id, scene_index, request_id, image_gen_status=IMAGE_FAILED, image_gen_error=error)

    def _finish(self, job_id: str, scene_index: int, request_id: str, **values) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                update(Scene)
                .where(
                    Scene.job_id == job_id,
                    Scene.scene_index == scene_index,
                    Scene.image_gen_request_id == request_id,
                )
                .values(**values)
            )
            updated = result.rowcount
            db.commit()
        if updated != 1:
            logging.warning(
                f"Ignored stale completion for job {job_id} scene {scene_index} (request {request_id})."
            )
            return False
        return True
