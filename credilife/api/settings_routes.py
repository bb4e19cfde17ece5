from fastapi import APIRouter, HTTPException, Depends
from fastapi import status
from typing import Dict, Any
import logging

from credilife.core.dependencies import get_schedule_repository
from credilife.core.exceptions import PersistenceError
from credilife.database.repositories import ReminderScheduleRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/settings", tags=["Settings"])


@router.get("/reminder-schedules", response_model=Dict[str, Any])
async def list_reminder_schedules(repository: ReminderScheduleRepository = Depends(get_schedule_repository)):
    try:
        schedules = await repository.find_all()
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return {
        "schedules": [schedule.model_dump(mode="json") for schedule in schedules],
        "total": len(schedules),
    }


# Inserts the default reminder schedules when none exist yet
@router.post("/seed-defaults", response_model=Dict[str, Any])
async def seed_default_schedules(repository: ReminderScheduleRepository = Depends(get_schedule_repository)):
    try:
        inserted = await repository.seed_defaults()
    except PersistenceError as e:
        logger.error(f"Seeding default reminder schedules failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return {
        "success": True,
        "inserted": inserted,
        "message": f"Seeded {inserted} default reminder schedules" if inserted
        else "Reminder schedules already exist",
    }
