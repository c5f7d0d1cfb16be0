"""Schedule rule API endpoints."""
import logging
from fastapi import APIRouter, HTTPException
from plex_encoder.exceptions import ScheduleRuleNotFoundError
from plex_encoder.models.schemas import (
    ScheduleActiveUpdate,
    ScheduleRuleCreate,
    ScheduleRuleResponse,
    ScheduleRuleUpdate,
)
from plex_encoder.services.scheduler import window_scheduler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=list[ScheduleRuleResponse])
async def list_schedules():
    """List all schedule rules."""
    return await window_scheduler.list_rules()


@router.post("", response_model=ScheduleRuleResponse)
async def create_schedule(data: ScheduleRuleCreate):
    """Create a schedule rule and apply it immediately."""
    return await window_scheduler.create_rule(data)


@router.put("/{rule_id}", response_model=ScheduleRuleResponse)
async def update_schedule(rule_id: int, data: ScheduleRuleUpdate):
    """Replace a schedule rule and re-evaluate it."""
    try:
        return await window_scheduler.update_rule(rule_id, data)
    except ScheduleRuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{rule_id}/active", response_model=ScheduleRuleResponse)
async def set_schedule_active(rule_id: int, data: ScheduleActiveUpdate):
    """Enable or disable a schedule rule."""
    try:
        return await window_scheduler.set_rule_active(rule_id, data.active)
    except ScheduleRuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{rule_id}")
async def delete_schedule(rule_id: int):
    """Delete a schedule rule."""
    try:
        await window_scheduler.delete_rule(rule_id)
    except ScheduleRuleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "id": rule_id}
