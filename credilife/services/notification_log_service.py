import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from credilife.core.exceptions import PersistenceError
from credilife.database.models.notification_log_model import NotificationLog
from credilife.schemas.notification_schema import (
    ChannelEnum,
    NotificationLogStats,
    NotificationResult,
)

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Filter dates without a timezone are taken as UTC, the timezone log entries are stamped in."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class NotificationLogSink(Protocol):
    async def append(self, result: NotificationResult) -> None:
        ...

    async def query(
        self,
        *,
        loan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        channel: Optional[ChannelEnum] = None,
        success: Optional[bool] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Dict[str, Any]:
        ...

    async def stats(self) -> NotificationLogStats:
        ...

    async def clear(self) -> int:
        ...


def _matches(
    result: NotificationResult,
    loan_id: Optional[str],
    customer_id: Optional[str],
    channel: Optional[ChannelEnum],
    success: Optional[bool],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
) -> bool:
    if loan_id and result.loan_id != loan_id:
        return False
    if customer_id and result.customer_id != customer_id:
        return False
    if channel and result.channel != channel:
        return False
    if success is not None and result.success != success:
        return False
    timestamp = as_utc(result.timestamp)
    if start_date and timestamp < as_utc(start_date):
        return False
    if end_date and timestamp > as_utc(end_date):
        return False
    return True


class InMemoryNotificationLog:
    """Append-only notification log kept in process memory."""

    def __init__(self):
        self._entries: List[NotificationResult] = []
        self._lock = asyncio.Lock()

    async def append(self, result: NotificationResult) -> None:
        async with self._lock:
            self._entries.append(result)

    async def query(
        self,
        *,
        loan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        channel: Optional[ChannelEnum] = None,
        success: Optional[bool] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Dict[str, Any]:
        async with self._lock:
            matched = [
                entry for entry in self._entries
                if _matches(entry, loan_id, customer_id, channel, success, start_date, end_date)
            ]
        # Newest first; entries were appended in time order
        matched.reverse()
        return {"data": matched[skip:skip + limit], "total": len(matched), "skip": skip, "limit": limit}

    async def stats(self) -> NotificationLogStats:
        async with self._lock:
            entries = list(self._entries)
        by_channel: Dict[str, int] = {}
        for entry in entries:
            by_channel[entry.channel.value] = by_channel.get(entry.channel.value, 0) + 1
        successful = sum(1 for entry in entries if entry.success)
        return NotificationLogStats(
            total_notifications=len(entries),
            successful_notifications=successful,
            failed_notifications=len(entries) - successful,
            by_channel=by_channel,
        )

    async def clear(self) -> int:
        async with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared {cleared} notification log entries")
        return cleared


class MongoNotificationLog:
    """Notification log stored in MongoDB through Beanie; `init_db()` must have run."""

    async def append(self, result: NotificationResult) -> None:
        try:
            await NotificationLog(
                loan_id=result.loan_id,
                customer_id=result.customer_id,
                channel=result.channel.value,
                success=result.success,
                message_id=result.message_id,
                error=result.error,
                rule_id=result.rule_id,
                installment_number=result.installment_number,
                timestamp=result.timestamp,
            ).insert()
        except Exception as e:
            logger.error(f"Failed to write notification log entry: {e}")
            raise PersistenceError(f"Failed to write notification log entry: {e}") from e

    @staticmethod
    def _build_query(
        loan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        channel: Optional[ChannelEnum] = None,
        success: Optional[bool] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if loan_id:
            query["loan_id"] = loan_id
        if customer_id:
            query["customer_id"] = customer_id
        if channel:
            query["channel"] = ChannelEnum(channel).value
        if success is not None:
            query["success"] = success
        ts_query = {}
        if start_date:
            ts_query["$gte"] = as_utc(start_date)
        if end_date:
            ts_query["$lte"] = as_utc(end_date)
        if ts_query:
            query["timestamp"] = ts_query
        return query

    @staticmethod
    def _to_result(doc: NotificationLog) -> NotificationResult:
        return NotificationResult(
            loan_id=doc.loan_id,
            customer_id=doc.customer_id,
            channel=doc.channel,
            success=doc.success,
            message_id=doc.message_id,
            error=doc.error,
            rule_id=doc.rule_id,
            installment_number=doc.installment_number,
            timestamp=as_utc(doc.timestamp),
        )

    async def query(
        self,
        *,
        loan_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        channel: Optional[ChannelEnum] = None,
        success: Optional[bool] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> Dict[str, Any]:
        query = self._build_query(loan_id, customer_id, channel, success, start_date, end_date)
        try:
            total = await NotificationLog.find(query).count()
            docs = await NotificationLog.find(query).sort("-timestamp").skip(skip).limit(limit).to_list()
        except Exception as e:
            logger.error(f"Failed to query notification logs: {e}")
            raise PersistenceError(f"Failed to query notification logs: {e}") from e
        return {"data": [self._to_result(d) for d in docs], "total": total, "skip": skip, "limit": limit}

    async def stats(self) -> NotificationLogStats:
        try:
            total = await NotificationLog.find({}).count()
            successful = await NotificationLog.find({"success": True}).count()
            by_channel = {}
            for channel in ChannelEnum:
                count = await NotificationLog.find({"channel": channel.value}).count()
                if count:
                    by_channel[channel.value] = count
        except Exception as e:
            logger.error(f"Failed to compute notification log stats: {e}")
            raise PersistenceError(f"Failed to compute notification log stats: {e}") from e
        return NotificationLogStats(
            total_notifications=total,
            successful_notifications=successful,
            failed_notifications=total - successful,
            by_channel=by_channel,
        )

    async def clear(self) -> int:
        try:
            result = await NotificationLog.find({}).delete()
        except Exception as e:
            logger.error(f"Failed to clear notification logs: {e}")
            raise PersistenceError(f"Failed to clear notification logs: {e}") from e
        cleared = result.deleted_count if result is not None else 0
        logger.info(f"Cleared {cleared} notification log entries")
        return cleared
