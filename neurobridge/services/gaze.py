# services/gaze.py
"""Gaze telemetry ingest.

Hits are filtered, sampled per second and folded into one stat row per
(user, session, block). Telemetry is best-effort: persistence failures are
logged and the call still reports how many hits it accepted.
"""
import logging
import math
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from neurobridge.background import spawn
from neurobridge.database import async_session_maker
from neurobridge.models import UserGazeBlockStat, UserGazeEvent, UserPersonalizationPrefs, utcnow
from neurobridge.schemas import GazeHit, GazeIngestRequest
from neurobridge.settings.config import settings

logger = logging.getLogger(__name__)

CONSENT_KEY = "allowEyeTracking"
CONSENT_TTL_SECONDS = 120.0
CLEANUP_INTERVAL_SECONDS = 3600.0
DEFAULT_DT_MS = 100.0
MAX_DT_MS = 2000.0


def parse_hit_time(raw: Any, now: datetime) -> datetime:
    """RFC 3339 string or epoch milliseconds; anything else means "now"."""
    if raw is None or isinstance(raw, bool):
        return now
    try:
        if isinstance(raw, (int, float)):
            return datetime.fromtimestamp(float(raw) / 1000.0, tz=timezone.utc)
        s = str(raw).strip()
        if not s:
            return now
        try:
            return datetime.fromtimestamp(float(s) / 1000.0, tz=timezone.utc)
        except ValueError:
            pass
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return now


def _parse_uuid(raw: Optional[str]) -> Optional[uuid.UUID]:
    try:
        value = uuid.UUID(str(raw).strip())
    except (TypeError, ValueError, AttributeError):
        return None
    return value if value.int else None


def _clamp_dt(dt_ms: float) -> float:
    if math.isnan(dt_ms) or not (0 < dt_ms <= MAX_DT_MS):
        return DEFAULT_DT_MS
    return dt_ms


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return value is True or value == 1


def _clamp_credit(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


@dataclass
class _BlockAgg:
    block_id: str
    fixation_ms: int = 0
    count: int = 0
    read_credit: float = 0.0
    last_seen: Optional[datetime] = None
    line_stats: dict[str, int] = field(default_factory=dict)


class GazeService:
    def __init__(self, *, session_maker=async_session_maker, enabled: Optional[bool] = None,
                 store_raw: Optional[bool] = None, retention_days: Optional[int] = None,
                 min_confidence: Optional[float] = None, max_batch: Optional[int] = None,
                 max_points_per_sec: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.session_maker = session_maker
        self.enabled = settings.GAZE_STREAM_ENABLED if enabled is None else enabled
        self.store_raw = settings.GAZE_STREAM_STORE_RAW if store_raw is None else store_raw
        self.retention_days = settings.GAZE_STREAM_RETENTION_DAYS if retention_days is None else retention_days
        self.min_confidence = (settings.GAZE_STREAM_MIN_CONFIDENCE_PCT / 100.0) if min_confidence is None else min_confidence
        self.max_batch = settings.GAZE_STREAM_MAX_BATCH if max_batch is None else max_batch
        self.max_points_per_sec = settings.GAZE_STREAM_MAX_POINTS_PER_SEC if max_points_per_sec is None else max_points_per_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._consent: dict[uuid.UUID, tuple[bool, float]] = {}
        self._last_cleanup: Optional[float] = None

    # ---- consent ----
    def invalidate_consent(self, user_id: uuid.UUID) -> None:
        with self._lock:
            self._consent.pop(user_id, None)

    async def is_allowed(self, user_id: uuid.UUID) -> bool:
        with self._lock:
            cached = self._consent.get(user_id)
            if cached:
                if self._clock() - cached[1] < CONSENT_TTL_SECONDS:
                    return cached[0]
                del self._consent[user_id]

        async with self.session_maker() as db:
            prefs = (await db.execute(
                select(UserPersonalizationPrefs).where(UserPersonalizationPrefs.user_id == user_id)
            )).scalars().first()
        if prefs is None:
            return False
        allowed = _truthy((prefs.prefs or {}).get(CONSENT_KEY))

        with self._lock:
            now = self._clock()
            # users who stopped streaming would otherwise stay cached forever
            for uid in [u for u, (_, at) in self._consent.items() if now - at >= CONSENT_TTL_SECONDS]:
                del self._consent[uid]
            self._consent[user_id] = (allowed, now)
        return allowed

    # ---- ingest ----
    def _accept(self, hits: list[GazeHit], now: datetime) -> list[tuple[GazeHit, datetime, float, float]]:
        accepted = []
        per_second: dict[int, int] = {}
        for h in hits[: self.max_batch]:
            if not (h.block_id or "").strip():
                continue
            if h.confidence < self.min_confidence:
                continue
            occurred = parse_hit_time(h.ts, now)
            second = math.floor(occurred.timestamp())
            if per_second.get(second, 0) >= self.max_points_per_sec:
                continue
            per_second[second] = per_second.get(second, 0) + 1
            accepted.append((h, occurred, _clamp_dt(h.dt_ms), _clamp_credit(h.read_credit)))
        return accepted

    async def ingest(self, user_id: uuid.UUID, session_id: uuid.UUID, req: GazeIngestRequest) -> int:
        if not self.enabled or user_id is None or not req or not req.hits:
            return 0
        if not await self.is_allowed(user_id):
            return 0

        accepted = self._accept(list(req.hits), utcnow())
        if not accepted:
            return 0

        path_id = _parse_uuid(req.path_id)
        node_id = _parse_uuid(req.node_id)
        aggs: dict[str, _BlockAgg] = {}
        raw_rows: list[UserGazeEvent] = []
        for h, occurred, dt, credit in accepted:
            bid = h.block_id.strip()
            a = aggs.setdefault(bid, _BlockAgg(block_id=bid))
            a.fixation_ms += int(round(dt))
            a.count += 1
            a.read_credit = max(a.read_credit, credit)
            if a.last_seen is None or occurred > a.last_seen:
                a.last_seen = occurred
            lid = (h.line_id or "").strip()
            if lid:
                a.line_stats[lid] = a.line_stats.get(lid, 0) + int(round(dt))
            if self.store_raw:
                meta: dict[str, Any] = {
                    "source": h.source,
                    "screen_w": h.screen_w,
                    "screen_h": h.screen_h,
                    "line_index": h.line_index,
                }
                if h.extra is not None:
                    meta["extra"] = h.extra
                raw_rows.append(UserGazeEvent(
                    id=uuid.uuid4(), user_id=user_id, session_id=session_id, path_id=path_id,
                    path_node_id=node_id, block_id=bid, line_id=lid, x=h.x, y=h.y,
                    confidence=h.confidence, occurred_at=occurred, meta=meta,
                ))

        async with self.session_maker() as db:
            for a in aggs.values():
                try:
                    async with db.begin_nested():
                        await self._upsert_block(db, user_id, session_id, path_id, node_id, a)
                except SQLAlchemyError as e:
                    logger.warning("Gaze stat upsert failed for block %s: %s", a.block_id, e)
            if raw_rows:
                try:
                    async with db.begin_nested():
                        db.add_all(raw_rows)
                except SQLAlchemyError as e:
                    logger.warning("Gaze event insert failed: %s", e)
            try:
                await db.commit()
            except SQLAlchemyError as e:
                logger.warning("Gaze ingest commit failed for user %s: %s", user_id, e)

        self._maybe_schedule_cleanup(user_id)
        return len(accepted)

    async def _upsert_block(self, db, user_id, session_id, path_id, node_id, a: _BlockAgg) -> None:
        row = (await db.execute(
            select(UserGazeBlockStat).where(
                UserGazeBlockStat.user_id == user_id,
                UserGazeBlockStat.session_id == session_id,
                UserGazeBlockStat.block_id == a.block_id,
            )
        )).scalars().first()
        if row is None:
            row = UserGazeBlockStat(
                id=uuid.uuid4(), user_id=user_id, session_id=session_id, block_id=a.block_id,
                fixation_ms=0, fixation_count=0, read_credit=0.0, meta={},
            )
            db.add(row)
        row.path_id = path_id
        row.path_node_id = node_id
        row.fixation_ms = int(row.fixation_ms or 0) + a.fixation_ms
        row.fixation_count = int(row.fixation_count or 0) + a.count
        row.read_credit = max(float(row.read_credit or 0.0), a.read_credit)
        if a.last_seen is not None:
            row.last_seen_at = a.last_seen
        if a.line_stats:
            meta = dict(row.meta or {})
            line_stats = dict(meta.get("line_stats") or {})
            for lid, ms in a.line_stats.items():
                line_stats[lid] = int(line_stats.get(lid, 0) or 0) + ms
            meta["line_stats"] = line_stats
            row.meta = meta
        row.updated_at = utcnow()

    # ---- retention ----
    def _maybe_schedule_cleanup(self, user_id: uuid.UUID) -> None:
        if self.retention_days <= 0:
            return
        with self._lock:
            now = self._clock()
            if self._last_cleanup is not None and now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
                return
            self._last_cleanup = now
        spawn(self.cleanup_raw_events(user_id), name=f"gaze-retention-{user_id}")

    async def cleanup_raw_events(self, user_id: uuid.UUID) -> int:
        cutoff = utcnow() - timedelta(days=self.retention_days)
        async with self.session_maker() as db:
            res = await db.execute(
                delete(UserGazeEvent).where(UserGazeEvent.user_id == user_id, UserGazeEvent.occurred_at < cutoff)
            )
            await db.commit()
        removed = res.rowcount or 0
        if removed:
            logger.info("Gaze retention removed %s raw events for user %s", removed, user_id)
        return removed


_gaze_service: Optional[GazeService] = None


def get_gaze_service() -> GazeService:
    global _gaze_service
    if _gaze_service is None:
        _gaze_service = GazeService()
    return _gaze_service
