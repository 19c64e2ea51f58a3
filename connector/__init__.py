"""Collaborator implementations for the clinic booking core."""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from scheduling.models import (
    Appointment,
    AppointmentStatus,
    Clinic,
    Doctor,
    DoctorService,
    Patient,
    Room,
    Service,
    TimeInterval,
)

from .audit_log import JsonFileEventSink
from .clinic_client import (
    ClinicAPIError,
    ClinicAuthError,
    ClinicCatalogClient,
    ClinicClientError,
    ClinicStoreClient,
    WebhookEventSink,
)

__all__ = [
    "ClinicAPIError",
    "ClinicAuthError",
    "ClinicCatalogClient",
    "ClinicClientError",
    "ClinicStoreClient",
    "InMemoryAppointmentStore",
    "InMemoryCatalog",
    "JsonFileEventSink",
    "WebhookEventSink",
]


class InMemoryAppointmentStore:
    """In-memory appointment persistence simulator. Safe for concurrent use."""

    def __init__(self) -> None:
        self._appointments: Dict[str, Appointment] = {}
        self._lock = threading.Lock()

    def load_active_appointments(self, clinic_id: str) -> Sequence[Appointment]:
        with self._lock:
            records = [
                record
                for record in self._appointments.values()
                if record.clinic_id == clinic_id and record.is_active
            ]
        return sorted(records, key=lambda record: record.interval.start)

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        with self._lock:
            return self._appointments.get(appointment_id)

    def persist_appointment(self, appointment: Appointment) -> None:
        with self._lock:
            self._appointments[appointment.appointment_id] = appointment

    def update_status(self, appointment_id: str, status: AppointmentStatus) -> None:
        with self._lock:
            record = self._require(appointment_id)
            self._appointments[appointment_id] = replace(record, status=status)

    def update_interval(self, appointment_id: str, interval: TimeInterval) -> None:
        with self._lock:
            record = self._require(appointment_id)
            self._appointments[appointment_id] = replace(record, interval=interval)

    def get_patient_schedule(self, patient_id: str) -> List[Appointment]:
        with self._lock:
            records = [
                record
                for record in self._appointments.values()
                if record.patient_id == patient_id and record.is_active
            ]
        return sorted(records, key=lambda record: record.interval.start)

    def _require(self, appointment_id: str) -> Appointment:
        record = self._appointments.get(appointment_id)
        if record is None:
            raise KeyError(f"Appointment '{appointment_id}' does not exist")
        return record


class InMemoryCatalog:
    """In-memory catalog of clinics, staff, rooms, services and patients."""

    def __init__(self) -> None:
        self._clinics: Dict[str, Clinic] = {}
        self._doctors: Dict[str, Doctor] = {}
        self._rooms: Dict[str, Room] = {}
        self._services: Dict[str, Service] = {}
        self._doctor_services: Dict[Tuple[str, str], DoctorService] = {}
        self._patients: Dict[str, Patient] = {}

    def register_clinic(self, clinic_id: str, name: str = "", **fields) -> Clinic:
        if not clinic_id:
            raise ValueError("clinic_id must be provided")
        clinic = Clinic(clinic_id=clinic_id, name=name or clinic_id, **fields)
        self._clinics[clinic_id] = clinic
        return clinic

    def register_doctor(self, doctor_id: str, clinic_id: str, **fields) -> Doctor:
        if not doctor_id:
            raise ValueError("doctor_id must be provided")
        doctor = Doctor(doctor_id=doctor_id, clinic_id=clinic_id, **fields)
        self._doctors[doctor_id] = doctor
        return doctor

    def register_room(self, room_id: str, clinic_id: str, **fields) -> Room:
        if not room_id:
            raise ValueError("room_id must be provided")
        room = Room(room_id=room_id, clinic_id=clinic_id, **fields)
        self._rooms[room_id] = room
        return room

    def register_service(self, service_id: str, code: str = "", **fields) -> Service:
        if not service_id:
            raise ValueError("service_id must be provided")
        service = Service(service_id=service_id, code=code or service_id, **fields)
        self._services[service_id] = service
        return service

    def offer_service(self, doctor_id: str, service_id: str, duration_minutes: int = 30) -> DoctorService:
        if doctor_id not in self._doctors:
            raise ValueError(f"Doctor '{doctor_id}' is not registered")
        if service_id not in self._services:
            raise ValueError(f"Service '{service_id}' is not registered")
        offer = DoctorService(doctor_id=doctor_id, service_id=service_id, duration_minutes=duration_minutes)
        self._doctor_services[(doctor_id, service_id)] = offer
        return offer

    def register_patient(self, patient_id: str, clinic_id: str) -> Patient:
        if not patient_id:
            raise ValueError("patient_id must be provided")
        patient = Patient(patient_id=patient_id, clinic_id=clinic_id)
        self._patients[patient_id] = patient
        return patient

    def set_doctor_active(self, doctor_id: str, is_active: bool) -> None:
        self._doctors[doctor_id] = replace(self._doctors[doctor_id], is_active=is_active)

    def set_room_active(self, room_id: str, is_active: bool) -> None:
        self._rooms[room_id] = replace(self._rooms[room_id], is_active=is_active)

    def get_clinic(self, clinic_id: str) -> Optional[Clinic]:
        return self._clinics.get(clinic_id)

    def get_doctor(self, doctor_id: str) -> Optional[Doctor]:
        return self._doctors.get(doctor_id)

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def get_service(self, service_id: str) -> Optional[Service]:
        return self._services.get(service_id)

    def get_doctor_service(self, doctor_id: str, service_id: str) -> Optional[DoctorService]:
        return self._doctor_services.get((doctor_id, service_id))

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        return self._patients.get(patient_id)
