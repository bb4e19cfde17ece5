from fastapi import APIRouter, HTTPException, Depends, Query
from fastapi import status
from typing import Dict, Any, Optional
from datetime import datetime
import logging

from credilife.core.dependencies import get_dispatcher, get_notification_log, get_scheduler
from credilife.core.exceptions import CycleFetchError, PersistenceError
from credilife.helpers.response_builder import (
    build_cycle_response,
    build_notification_entry,
    build_preview_response,
    build_scheduler_status,
)
from credilife.schemas.notification_schema import ChannelEnum, SchedulerActionRequest
from credilife.services.dispatcher import NotificationDispatcher
from credilife.workers.reminder_scheduler import ReminderScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# Returns the scheduler state, active config and the last cycle summary
@router.get("/scheduler", response_model=Dict[str, Any])
async def get_scheduler_status(scheduler: ReminderScheduler = Depends(get_scheduler)):
    return build_scheduler_status(scheduler.status())


# Starts, stops, triggers or simulates the reminder scheduler
@router.post("/scheduler", response_model=Dict[str, Any])
async def control_scheduler(
    request: SchedulerActionRequest,
    scheduler: ReminderScheduler = Depends(get_scheduler),
):
    if request.action == "start":
        scheduler_status = await scheduler.start(request.config)
        return {
            "success": True,
            "message": "Notification scheduler started",
            "scheduler": build_scheduler_status(scheduler_status),
        }

    if request.action == "stop":
        scheduler_status = await scheduler.stop()
        return {
            "success": True,
            "message": "Notification scheduler stopped",
            "scheduler": build_scheduler_status(scheduler_status),
        }

    if request.action == "check":
        summary = await scheduler.check_now(force=request.force)
        return {
            "success": summary.error is None,
            "message": "Notification check completed" if summary.error is None else "Notification check failed",
            "cycle": build_cycle_response(summary),
        }

    # simulate: report what a cycle would send on the given date, without sending
    try:
        matches = await scheduler.preview(request.simulated_date, request.config)
    except CycleFetchError as e:
        logger.error(f"Simulation failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to run simulation")

    preview = build_preview_response(matches)
    return {
        "success": True,
        "message": f"Simulation complete: {preview['would_send']} reminder(s) would be sent "
                   f"on {request.simulated_date.isoformat()}",
        **preview,
    }


# Runs one reminder cycle now and waits for it
@router.post("/send-reminders", response_model=Dict[str, Any])
async def send_reminders(
    force: bool = Query(default=False, description="Send even if today's reminder was already sent"),
    scheduler: ReminderScheduler = Depends(get_scheduler),
):
    summary = await scheduler.check_now(force=force)
    if summary.error:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=summary.error)
    return {
        "success": True,
        "message": f"Sent {summary.notifications_sent} notification(s), {summary.notifications_failed} failed",
        "cycle": build_cycle_response(summary),
    }


@router.get("/log", response_model=Dict[str, Any])
async def list_notification_log(
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=1000),
    loan_id: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None),
    channel: Optional[ChannelEnum] = Query(default=None),
    success: Optional[bool] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    log=Depends(get_notification_log),
):
    try:
        page = await log.query(
            loan_id=loan_id,
            customer_id=customer_id,
            channel=channel,
            success=success,
            start_date=start_date,
            end_date=end_date,
            skip=skip,
            limit=limit,
        )
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return {**page, "data": [build_notification_entry(entry) for entry in page["data"]]}


@router.delete("/log", response_model=Dict[str, Any])
async def clear_notification_log(log=Depends(get_notification_log)):
    try:
        cleared = await log.clear()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return {"success": True, "cleared": cleared}


# Scheduler state, delivery totals and which channels have a configured sender
@router.get("/status", response_model=Dict[str, Any])
async def notification_status(
    scheduler: ReminderScheduler = Depends(get_scheduler),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    log=Depends(get_notification_log),
):
    try:
        stats = await log.stats()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return {
        "scheduler": build_scheduler_status(scheduler.status()),
        "stats": stats.model_dump(),
        "channels": {channel.value: dispatcher.sender_for(channel) is not None for channel in ChannelEnum},
        "dedupe": scheduler.markers.backend if scheduler.markers is not None else "disabled",
    }
