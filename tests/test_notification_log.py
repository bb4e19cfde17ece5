import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError

from credilife.core.idempotency import ReminderMarkerStore, reminder_key
from credilife.schemas.notification_schema import ChannelEnum, NotificationResult


def _result(loan_id="loan-1", channel=ChannelEnum.email, success=True, minutes=0):
    return NotificationResult(
        loan_id=loan_id,
        customer_id="cust-1",
        channel=channel,
        success=success,
        error=None if success else "boom",
        timestamp=datetime(2024, 9, 24, 9, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes),
    )


@pytest.mark.asyncio
async def test_query_filters_and_orders_newest_first(notification_log):
    await notification_log.append(_result("loan-1", minutes=0))
    await notification_log.append(_result("loan-2", ChannelEnum.sms, success=False, minutes=1))
    await notification_log.append(_result("loan-1", ChannelEnum.whatsapp, minutes=2))

    everything = await notification_log.query()
    loan_one = await notification_log.query(loan_id="loan-1")
    failures = await notification_log.query(success=False)
    recent = await notification_log.query(start_date=datetime(2024, 9, 24, 9, 1, tzinfo=timezone.utc))

    assert everything["total"] == 3
    assert [r.channel for r in everything["data"]] == [ChannelEnum.whatsapp, ChannelEnum.sms, ChannelEnum.email]
    assert loan_one["total"] == 2
    assert [r.loan_id for r in failures["data"]] == ["loan-2"]
    assert recent["total"] == 2


@pytest.mark.asyncio
async def test_query_paginates(notification_log):
    for minute in range(5):
        await notification_log.append(_result(minutes=minute))

    page = await notification_log.query(skip=1, limit=2)

    assert page["total"] == 5
    assert len(page["data"]) == 2


@pytest.mark.asyncio
async def test_stats_and_clear(notification_log):
    await notification_log.append(_result(success=True))
    await notification_log.append(_result(channel=ChannelEnum.sms, success=False))

    stats = await notification_log.stats()
    cleared = await notification_log.clear()

    assert stats.total_notifications == 2
    assert stats.successful_notifications == 1
    assert stats.failed_notifications == 1
    assert stats.by_channel == {"email": 1, "sms": 1}
    assert cleared == 2
    assert (await notification_log.stats()).total_notifications == 0


def test_results_are_immutable():
    result = _result()
    with pytest.raises(ValidationError):
        result.success = False


@pytest.mark.asyncio
async def test_marker_store_in_memory():
    store = ReminderMarkerStore(redis_url="")
    key = reminder_key("loan-1", 2, "r1", datetime(2024, 9, 24).date())

    assert store.backend == "memory"
    assert key == "reminder:loan-1:2:r1:2024-09-24"
    assert await store.is_marked(key) is False
    await store.mark(key)
    assert await store.is_marked(key) is True


@pytest.mark.asyncio
async def test_marker_store_expires_entries():
    now = [1000.0]
    store = ReminderMarkerStore(redis_url="", timer=lambda: now[0])

    await store.mark("k", ttl_seconds=10)
    now[0] += 11

    assert await store.is_marked("k") is False


@pytest.mark.asyncio
async def test_marker_store_uses_redis_client():
    class FakeRedis:
        def __init__(self):
            self.data = {}

        async def exists(self, key):
            return int(key in self.data)

        async def set(self, key, value, ex=None):
            self.data[key] = (value, ex)

    client = FakeRedis()
    store = ReminderMarkerStore(client=client)

    await store.mark("reminder:k", ttl_seconds=60)

    assert store.backend == "redis"
    assert await store.is_marked("reminder:k") is True
    assert client.data["reminder:k"] == ("1", 60)


@pytest.mark.asyncio
async def test_query_accepts_dates_without_timezone(notification_log):
    await notification_log.append(_result("loan-1", minutes=0))
    await notification_log.append(_result("loan-2", minutes=30))

    after = await notification_log.query(start_date=datetime(2024, 9, 24, 9, 15))
    before = await notification_log.query(end_date=datetime(2024, 9, 24, 9, 15))

    assert [r.loan_id for r in after["data"]] == ["loan-2"]
    assert [r.loan_id for r in before["data"]] == ["loan-1"]
