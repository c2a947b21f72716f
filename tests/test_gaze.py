import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from neurobridge.models import UserGazeBlockStat, UserGazeEvent, UserPersonalizationPrefs, utcnow
from neurobridge.schemas import GazeHit, GazeIngestRequest
from neurobridge.services.gaze import GazeService, parse_hit_time

T0_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def _consent(session_maker, user_id, allowed):
    async with session_maker() as db:
        row = (await db.execute(
            select(UserPersonalizationPrefs).where(UserPersonalizationPrefs.user_id == user_id)
        )).scalars().first()
        if row is None:
            row = UserPersonalizationPrefs(id=uuid.uuid4(), user_id=user_id, prefs={})
            db.add(row)
        row.prefs = {"allowEyeTracking": allowed}
        await db.commit()


def _service(**kw):
    kw.setdefault("enabled", True)
    kw.setdefault("store_raw", False)
    kw.setdefault("retention_days", 0)
    kw.setdefault("min_confidence", 0.4)
    kw.setdefault("max_batch", 400)
    kw.setdefault("max_points_per_sec", 30)
    return GazeService(**kw)


def _hit(block="b1", ts=T0_MS, **kw):
    kw.setdefault("confidence", 0.9)
    kw.setdefault("dt_ms", 50)
    return GazeHit(block_id=block, ts=ts, **kw)


async def _stats(session_maker):
    async with session_maker() as db:
        return (await db.execute(select(UserGazeBlockStat).order_by(UserGazeBlockStat.block_id))).scalars().all()


async def _raw_count(session_maker):
    async with session_maker() as db:
        return await db.scalar(select(func.count()).select_from(UserGazeEvent))


def test_parse_hit_time_formats():
    now = datetime(2030, 1, 1, tzinfo=timezone.utc)
    assert parse_hit_time(T0_MS, now) == datetime.fromtimestamp(T0_MS / 1000, tz=timezone.utc)
    assert parse_hit_time(str(T0_MS), now) == datetime.fromtimestamp(T0_MS / 1000, tz=timezone.utc)
    assert parse_hit_time("2024-05-01T10:00:00Z", now) == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)
    assert parse_hit_time("yesterday-ish", now) == now
    assert parse_hit_time(None, now) == now


@pytest.mark.asyncio
async def test_burst_in_one_second_is_capped(session_maker, user):
    await _consent(session_maker, user.id, True)
    svc = _service()
    hits = [_hit(ts=T0_MS + i, read_credit=i / 100) for i in range(500)]

    accepted = await svc.ingest(user.id, uuid.uuid4(), GazeIngestRequest(hits=hits))

    assert accepted == 30
    [stat] = await _stats(session_maker)
    assert stat.fixation_count == 30
    assert stat.fixation_ms == 30 * 50
    # best credit among the accepted hits (the first 30)
    assert stat.read_credit == pytest.approx(0.29)


@pytest.mark.asyncio
async def test_hits_spread_over_seconds_are_capped_per_second(session_maker, user):
    await _consent(session_maker, user.id, True)
    svc = _service(max_points_per_sec=5)
    hits = [_hit(ts=T0_MS + sec * 1000 + i) for sec in range(3) for i in range(10)]

    assert await svc.ingest(user.id, uuid.uuid4(), GazeIngestRequest(hits=hits)) == 15


@pytest.mark.asyncio
async def test_without_consent_nothing_is_written(session_maker, user, other_user):
    await _consent(session_maker, user.id, False)
    svc = _service(store_raw=True)
    req = GazeIngestRequest(hits=[_hit()])

    assert await svc.ingest(user.id, uuid.uuid4(), req) == 0
    # no prefs row at all also means no consent
    assert await svc.ingest(other_user.id, uuid.uuid4(), req) == 0
    assert await _stats(session_maker) == []
    assert await _raw_count(session_maker) == 0


@pytest.mark.asyncio
async def test_filters_and_clamps(session_maker, user):
    await _consent(session_maker, user.id, True)
    svc = _service()
    hits = [
        _hit(block="  "),
        _hit(confidence=0.1),
        _hit(block="b1", dt_ms=0, read_credit=7.5),
        _hit(block="b1", dt_ms=5000, read_credit=-1),
        _hit(block="b1", dt_ms=250, line_id="l1"),
    ]

    assert await svc.ingest(user.id, uuid.uuid4(), GazeIngestRequest(hits=hits)) == 3
    [stat] = await _stats(session_maker)
    assert stat.fixation_ms == 100 + 100 + 250
    assert stat.read_credit == 1.0
    assert stat.meta == {"line_stats": {"l1": 250}}


@pytest.mark.asyncio
async def test_batch_is_truncated(session_maker, user):
    await _consent(session_maker, user.id, True)
    svc = _service(max_batch=10, max_points_per_sec=1000)
    hits = [_hit(ts=T0_MS + i) for i in range(50)]

    assert await svc.ingest(user.id, uuid.uuid4(), GazeIngestRequest(hits=hits)) == 10


@pytest.mark.asyncio
async def test_repeat_ingest_accumulates_into_one_row(session_maker, user):
    await _consent(session_maker, user.id, True)
    svc = _service()
    session_id = uuid.uuid4()
    path_id = uuid.uuid4()
    first = GazeIngestRequest(path_id=str(path_id), node_id="not-a-uuid",
                              hits=[_hit(read_credit=0.7, line_id="l1", dt_ms=100)])
    second = GazeIngestRequest(path_id=str(path_id),
                               hits=[_hit(ts=T0_MS + 5000, read_credit=0.2, line_id="l1", dt_ms=40)])

    await svc.ingest(user.id, session_id, first)
    await svc.ingest(user.id, session_id, second)

    [stat] = await _stats(session_maker)
    assert stat.fixation_count == 2
    assert stat.fixation_ms == 140
    assert stat.read_credit == pytest.approx(0.7)
    assert stat.path_id == path_id
    assert stat.path_node_id is None
    assert stat.meta["line_stats"] == {"l1": 140}


@pytest.mark.asyncio
async def test_consent_is_cached_until_invalidated(session_maker, user):
    clock = FakeClock()
    svc = _service(clock=clock)
    await _consent(session_maker, user.id, True)
    assert await svc.is_allowed(user.id)

    await _consent(session_maker, user.id, False)
    assert await svc.is_allowed(user.id)

    clock.now += 121
    assert not await svc.is_allowed(user.id)

    await _consent(session_maker, user.id, True)
    svc.invalidate_consent(user.id)
    assert await svc.is_allowed(user.id)


@pytest.mark.asyncio
async def test_expired_consent_entries_are_dropped(session_maker, user, other_user):
    clock = FakeClock()
    svc = _service(clock=clock)
    await _consent(session_maker, user.id, True)
    await _consent(session_maker, other_user.id, True)
    assert await svc.is_allowed(user.id)

    clock.now += 121
    assert await svc.is_allowed(other_user.id)

    assert set(svc._consent) == {other_user.id}

    clock.now += 121
    await _consent(session_maker, other_user.id, False)
    assert not await svc.is_allowed(other_user.id)
    assert svc._consent[other_user.id][0] is False


@pytest.mark.asyncio
async def test_raw_events_are_stored_when_enabled(session_maker, user):
    await _consent(session_maker, user.id, True)
    svc = _service(store_raw=True)
    hits = [_hit(x=0.25, y=0.5, source="webcam", extra={"k": 1}), _hit(block="b2")]

    assert await svc.ingest(user.id, uuid.uuid4(), GazeIngestRequest(hits=hits)) == 2
    async with session_maker() as db:
        rows = (await db.execute(select(UserGazeEvent).order_by(UserGazeEvent.block_id))).scalars().all()
    assert [r.block_id for r in rows] == ["b1", "b2"]
    assert rows[0].meta["source"] == "webcam"
    assert rows[0].meta["extra"] == {"k": 1}


@pytest.mark.asyncio
async def test_retention_removes_old_raw_events(session_maker, user):
    svc = _service(retention_days=30)
    now = utcnow()
    async with session_maker() as db:
        for age in (timedelta(days=40), timedelta(days=1)):
            db.add(UserGazeEvent(id=uuid.uuid4(), user_id=user.id, session_id=uuid.uuid4(),
                                 block_id="b1", occurred_at=now - age, meta={}))
        await db.commit()

    assert await svc.cleanup_raw_events(user.id) == 1
    assert await _raw_count(session_maker) == 1


@pytest.mark.asyncio
async def test_disabled_stream_accepts_nothing(session_maker, user):
    await _consent(session_maker, user.id, True)
    svc = _service(enabled=False)

    assert await svc.ingest(user.id, uuid.uuid4(), GazeIngestRequest(hits=[_hit()])) == 0
