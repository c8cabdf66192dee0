from typing import List, Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
import logging

from ..auth import get_current_user, resolve_user_id
from ..container import Container, get_container
from ..application.policies import can_establish_session
from ..application.ports.appointments_repo import AppointmentDto
from ..schemas.appointments.appointment import (
    AppointmentCreate,
    AppointmentResponse,
    PaymentRecord,
    PrescriptionLink,
    SessionPermissionResponse,
)
from .websocket_stream import stream_until_disconnect

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])


@router.post("/", response_model=AppointmentResponse, status_code=201)
async def book_appointment(
    appointment_data: AppointmentCreate,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    try:
        appt = await container.appointments.book(appointment_data.to_dto(current_user), actor_id=current_user)
        return AppointmentResponse.from_dto(appt)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error booking appointment: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to book appointment")


@router.get("/", response_model=List[AppointmentResponse])
async def list_appointments(
    role: Literal["patient", "practitioner"] = Query("patient"),
    upcoming: bool = Query(False),
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    svc = container.appointments
    if role == "practitioner":
        appts = await (svc.upcoming_for_practitioner(current_user) if upcoming else svc.list_for_practitioner(current_user))
    else:
        appts = await (svc.upcoming_for_patient(current_user) if upcoming else svc.list_for_patient(current_user))
    return [AppointmentResponse.from_dto(a) for a in appts]


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: str,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    appt = await container.appointments.get_for_participant(appointment_id, current_user)
    return AppointmentResponse.from_dto(appt)


@router.put("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: str,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    appt = await container.appointments.cancel(appointment_id, actor_id=current_user)
    return AppointmentResponse.from_dto(appt)


@router.put("/{appointment_id}/start", response_model=AppointmentResponse)
async def start_appointment(
    appointment_id: str,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    appt = await container.appointments.start(appointment_id, actor_id=current_user)
    return AppointmentResponse.from_dto(appt)


@router.put("/{appointment_id}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_id: str,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    appt = await container.appointments.complete(appointment_id, actor_id=current_user)
    return AppointmentResponse.from_dto(appt)


@router.put("/{appointment_id}/waiting-room/join", response_model=AppointmentResponse)
async def join_waiting_room(
    appointment_id: str,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    appt = await container.waiting_room.join(appointment_id, actor_id=current_user)
    return AppointmentResponse.from_dto(appt)


@router.put("/{appointment_id}/waiting-room/leave", response_model=AppointmentResponse)
async def leave_waiting_room(
    appointment_id: str,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    appt = await container.waiting_room.leave(appointment_id, actor_id=current_user)
    return AppointmentResponse.from_dto(appt)


@router.get("/{appointment_id}/session", response_model=SessionPermissionResponse)
async def check_session(
    appointment_id: str,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    await container.appointments.get_for_participant(appointment_id, current_user)
    allowed = await container.session_gate.check(appointment_id)
    return SessionPermissionResponse(appointment_id=appointment_id, can_establish_session=allowed)


@router.post("/{appointment_id}/session/wait", response_model=AppointmentResponse)
async def wait_for_session(
    appointment_id: str,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    """Block until the practitioner starts the appointment, or fail after the polling ceiling."""
    await container.appointments.get_for_participant(appointment_id, current_user)
    appt = await container.session_gate.wait_for_session(appointment_id)
    return AppointmentResponse.from_dto(appt)


@router.put("/{appointment_id}/payment", response_model=AppointmentResponse)
async def record_payment(
    appointment_id: str,
    payment: PaymentRecord,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    await container.appointments.get_for_participant(appointment_id, current_user)
    appt = await container.appointments.mark_paid(appointment_id, payment.payment_id)
    return AppointmentResponse.from_dto(appt)


@router.put("/{appointment_id}/prescription", response_model=AppointmentResponse)
async def attach_prescription(
    appointment_id: str,
    link: PrescriptionLink,
    current_user: str = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    appt = await container.appointments.attach_prescription(appointment_id, link.prescription_id, actor_id=current_user)
    return AppointmentResponse.from_dto(appt)


def _render_snapshot(snapshot: Optional[AppointmentDto]) -> dict:
    if snapshot is None:
        return {"appointment": None, "can_establish_session": False}
    return {
        "appointment": AppointmentResponse.from_dto(snapshot).model_dump(mode="json"),
        "can_establish_session": can_establish_session(snapshot),
    }


@router.websocket("/{appointment_id}/ws")
async def watch_appointment(
    websocket: WebSocket,
    appointment_id: str,
    token: str = Query(...),
    container: Container = Depends(get_container),
):
    """
    Push every appointment change to the client together with a freshly
    evaluated session hand-off permission.
    """
    user_id = resolve_user_id(token)
    if not user_id:
        await websocket.close(code=4401)
        return
    appt = await container.appointments_repo.get(appointment_id)
    if appt is None or user_id not in (appt.patient_id, appt.practitioner_id):
        await websocket.close(code=4404)
        return

    await websocket.accept()
    logger.info(f"WebSocket watch established for appointment {appointment_id} by {user_id}")
    try:
        await stream_until_disconnect(websocket, container.appointments.watch(appointment_id), _render_snapshot)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {str(e)}")
        return
    logger.info(f"WebSocket disconnected for appointment {appointment_id}")
