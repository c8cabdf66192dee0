from datetime import datetime
from typing import List
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
import logging

from ..auth import get_current_user, resolve_user_id
from ..container import Container, get_container
from ..application.ports.appointments_repo import AppointmentDto
from ..schemas.appointments.appointment import AppointmentResponse, AvailabilityResponse
from ..schemas.practitioners.working_hours import (
    WaitingRoomResponse,
    WorkingHoursPayload,
    WorkingHoursResponse,
)
from .websocket_stream import stream_until_disconnect

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/practitioners", tags=["Practitioners"])


@router.get("/me/waiting-room", response_model=WaitingRoomResponse)
async def get_waiting_room(
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    waiting = await container.waiting_room.list_waiting(current_user)
    return WaitingRoomResponse(
        practitioner_id=current_user,
        waiting=[AppointmentResponse.from_dto(a) for a in waiting],
    )


@router.put("/me/working-hours", response_model=WorkingHoursResponse)
async def set_working_hours(
    payload: WorkingHoursPayload,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    hours = payload.to_dto(current_user)
    await container.working_hours_repo.save(hours)
    logger.info(f"Working hours updated for practitioner {current_user}")
    return WorkingHoursResponse.from_dto(hours)


@router.get("/{practitioner_id}/working-hours", response_model=WorkingHoursResponse)
async def get_working_hours(
    practitioner_id: str,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    hours = await container.working_hours_repo.get(practitioner_id)
    if hours is None:
        raise HTTPException(status_code=404, detail="Working hours not configured")
    return WorkingHoursResponse.from_dto(hours)


@router.get("/{practitioner_id}/availability", response_model=AvailabilityResponse)
async def check_availability(
    practitioner_id: str,
    time: datetime = Query(..., description="Candidate start time (ISO 8601)"),
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    result = await container.availability.check(practitioner_id, time)
    return AvailabilityResponse(
        practitioner_id=practitioner_id,
        time=time,
        available=result.available,
        reason=result.reason,
    )


@router.websocket("/me/waiting-room/ws")
async def watch_waiting_room(
    websocket: WebSocket,
    token: str = Query(...),
    container: Container = Depends(get_container),
):
    """Live waiting-room list for the authenticated practitioner."""
    user_id = resolve_user_id(token)
    if not user_id:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    logger.info(f"Waiting room watch established for practitioner {user_id}")

    def render(waiting: List[AppointmentDto]) -> dict:
        return WaitingRoomResponse(
            practitioner_id=user_id,
            waiting=[AppointmentResponse.from_dto(a) for a in waiting],
        ).model_dump(mode="json")

    try:
        await stream_until_disconnect(websocket, container.waiting_room.watch_waiting(user_id), render)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {str(e)}")
        return
    logger.info(f"Waiting room watch closed for practitioner {user_id}")
