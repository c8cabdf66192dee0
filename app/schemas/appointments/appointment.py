# app/schemas/appointments/appointment.py
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
import uuid

from ...application.policies import can_establish_session
from ...application.ports.appointments_repo import (
    AppointmentDto,
    AppointmentStatus,
    AppointmentType,
    ConsultationType,
    IntakeData,
)

class IntakeSchema(BaseModel):
    symptoms: Optional[List[str]] = None
    severity: Optional[str] = None
    duration: Optional[str] = None
    ai_recommendation: Optional[str] = None
    recommended_specializations: Optional[List[str]] = None
    ai_summary: Optional[str] = None

class AppointmentCreate(BaseModel):
    # Client-assigned; generated when omitted
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1, max_length=64)
    practitioner_id: str = Field(min_length=1)
    # Optional for instant consultations, which start now
    scheduled_time: Optional[datetime] = None
    appointment_type: AppointmentType = AppointmentType.SCHEDULED
    consultation_type: ConsultationType = ConsultationType.VIDEO
    notes: Optional[str] = Field(default=None, max_length=2000)
    intake: Optional[IntakeSchema] = None

    def to_dto(self, patient_id: str) -> AppointmentDto:
        return AppointmentDto(
            id=self.id,
            patient_id=patient_id,
            practitioner_id=self.practitioner_id,
            scheduled_time=self.scheduled_time,
            appointment_type=self.appointment_type,
            consultation_type=self.consultation_type,
            notes=self.notes.strip() if self.notes and self.notes.strip() else None,
            intake=IntakeData(**self.intake.model_dump()) if self.intake else None,
        )

class AppointmentResponse(BaseModel):
    id: str
    patient_id: str
    practitioner_id: str
    scheduled_time: datetime
    appointment_type: AppointmentType
    consultation_type: ConsultationType
    status: AppointmentStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    waiting_room_joined_at: Optional[datetime] = None
    waiting_room_left_at: Optional[datetime] = None
    notes: Optional[str] = None
    intake: Optional[IntakeSchema] = None
    prescription_id: Optional[str] = None
    is_paid: bool = False
    payment_id: Optional[str] = None
    can_establish_session: bool = False

    @classmethod
    def from_dto(cls, appt: AppointmentDto) -> "AppointmentResponse":
        intake = appt.intake
        return cls(
            id=appt.id,
            patient_id=appt.patient_id,
            practitioner_id=appt.practitioner_id,
            scheduled_time=appt.scheduled_time,
            appointment_type=appt.appointment_type,
            consultation_type=appt.consultation_type,
            status=appt.status,
            created_at=appt.created_at,
            updated_at=appt.updated_at,
            waiting_room_joined_at=appt.waiting_room_joined_at,
            waiting_room_left_at=appt.waiting_room_left_at,
            notes=appt.notes,
            intake=IntakeSchema(**vars(intake)) if intake else None,
            prescription_id=appt.prescription_id,
            is_paid=appt.is_paid,
            payment_id=appt.payment_id,
            can_establish_session=can_establish_session(appt),
        )

class SessionPermissionResponse(BaseModel):
    appointment_id: str
    can_establish_session: bool

class AvailabilityResponse(BaseModel):
    practitioner_id: str
    time: datetime
    available: bool
    reason: Optional[str] = None

class PaymentRecord(BaseModel):
    payment_id: str = Field(min_length=1)

class PrescriptionLink(BaseModel):
    prescription_id: str = Field(min_length=1)
