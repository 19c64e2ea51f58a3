"""Clinic records API client utilities.

This module provides clients for the clinic records service that owns the
appointment rows, the catalog tables and the event webhook. The clients
manage OAuth2 client-credentials authentication, HTTP session handling with
retries, and structured error reporting so the booking core can treat them
as ordinary collaborators.
"""
from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from scheduling.events import ChangeEvent
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

__all__ = [
    "ClinicAPIError",
    "ClinicAuthError",
    "ClinicCatalogClient",
    "ClinicClientError",
    "ClinicStoreClient",
    "WebhookEventSink",
]


# The hosting application owns handler configuration.
logger = logging.getLogger(__name__)


DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS = 60
DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5

DEFAULT_TOKEN_URL = os.getenv("CLINIC_API_TOKEN_URL", "https://records.clinic.local/oauth2/token")
DEFAULT_BASE_URL = os.getenv("CLINIC_API_BASE_URL", "https://records.clinic.local/api/v1")
DEFAULT_WEBHOOK_URL = os.getenv("CLINIC_EVENT_WEBHOOK_URL", "https://records.clinic.local/api/v1/events")
DEFAULT_CLIENT_ID = os.getenv("CLINIC_API_CLIENT_ID")
DEFAULT_CLIENT_SECRET = os.getenv("CLINIC_API_CLIENT_SECRET")
DEFAULT_SCOPE = os.getenv("CLINIC_API_SCOPE", "")


class ClinicClientError(RuntimeError):
    """Base exception for clinic records API errors."""


class ClinicAuthError(ClinicClientError):
    """Raised when OAuth2 authentication fails."""


class ClinicAPIError(ClinicClientError):
    """Raised when the clinic records API returns an error response."""


# Every write this package issues is idempotent: PUT and PATCH set absolute
# values and webhook POSTs carry an Idempotency-Key header.
_RETRYABLE_METHODS = frozenset({"GET", "PUT", "PATCH", "POST"})
_RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


def build_session(*, max_retries: int, backoff_factor: float) -> requests.Session:
    """Session whose transport retries transient failures before we see them."""

    retry = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=_RETRYABLE_STATUSES,
        allowed_methods=_RETRYABLE_METHODS,
        raise_on_status=False,
    )
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    for prefix in ("http://", "https://"):
        session.mount(prefix, adapter)
    return session


@dataclass(frozen=True)
class AccessToken:
    value: str
    expires_at: datetime

    def usable(self, margin: timedelta) -> bool:
        return datetime.now(timezone.utc) + margin < self.expires_at

    @classmethod
    def from_payload(cls, payload: Any) -> "AccessToken":
        """Parse an OAuth2 token response body."""

        if not isinstance(payload, Mapping):
            raise ClinicAuthError("Token response is not a JSON object")
        value = payload.get("access_token")
        if not value or not isinstance(value, str):
            raise ClinicAuthError("Token response missing access_token")
        lifetime = payload.get("expires_in") or 300
        try:
            seconds = int(lifetime)
        except (TypeError, ValueError) as exc:
            raise ClinicAuthError(f"Invalid expires_in value in token response: {lifetime!r}") from exc
        return cls(value=value, expires_at=datetime.now(timezone.utc) + timedelta(seconds=seconds))


def _body_excerpt(response: Response) -> Any:
    if "json" in response.headers.get("Content-Type", ""):
        try:
            return response.json()
        except ValueError:
            pass
    return response.text[:2048]


class ClinicBaseClient:
    """Authenticated JSON access to the clinic records API."""

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        client_id: Optional[str] = DEFAULT_CLIENT_ID,
        client_secret: Optional[str] = DEFAULT_CLIENT_SECRET,
        scope: Optional[str] = DEFAULT_SCOPE,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        token_refresh_buffer: int = DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url or not token_url:
            raise ValueError("base_url and token_url must be provided")
        if not client_id or not client_secret:
            raise ValueError("client_id and client_secret must be provided")

        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.timeout = timeout
        self._credentials: Dict[str, str] = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
        }
        if scope:
            self._credentials["scope"] = scope
        self._token_margin = timedelta(seconds=token_refresh_buffer)
        self._session = session or build_session(max_retries=max_retries, backoff_factor=backoff_factor)
        self._token_lock = threading.Lock()
        self._token: Optional[AccessToken] = None

    def _bearer(self) -> str:
        token = self._token
        if token is None or not token.usable(self._token_margin):
            with self._token_lock:
                token = self._token
                if token is None or not token.usable(self._token_margin):
                    token = self._token = self._fetch_token()
        return f"Bearer {token.value}"

    def _fetch_token(self) -> AccessToken:
        try:
            response = self._session.post(self.token_url, data=self._credentials, timeout=self.timeout)
            response.raise_for_status()
            token = AccessToken.from_payload(response.json())
        except requests.RequestException as exc:
            logger.error("Token request to %s failed: %s", self.token_url, exc)
            raise ClinicAuthError("Failed to obtain clinic records API token") from exc
        except ValueError as exc:
            logger.error("Token endpoint %s returned a non-JSON body", self.token_url)
            raise ClinicAuthError("Invalid token response from clinic records API") from exc
        except ClinicAuthError as exc:
            logger.error("Rejected token response from %s: %s", self.token_url, exc)
            raise
        logger.info("Clinic records API token refreshed; expires at %s", token.expires_at.isoformat())
        return token

    def _call(
        self,
        method: str,
        path: str = "",
        *,
        url: Optional[str] = None,
        ok: Tuple[int, ...] = (200,),
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Response:
        """Send one authenticated request; any status outside ``ok`` raises."""

        target = url or f"{self.base_url}/{path.lstrip('/')}"
        request_headers = {"Authorization": self._bearer(), "Accept": "application/json"}
        request_headers.update(headers or {})
        try:
            response = self._session.request(
                method=method,
                url=target,
                params=params,
                json=body,
                headers=request_headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("%s %s failed: %s", method, target, exc)
            raise ClinicAPIError(f"{method} {target} failed: {exc}") from exc

        if response.status_code not in ok:
            logger.error(
                "%s %s returned status=%s body=%s", method, target, response.status_code, _body_excerpt(response)
            )
            raise ClinicAPIError(f"{method} {target} returned unexpected status {response.status_code}")
        return response

    def _record(self, path: str) -> Optional[Dict[str, Any]]:
        """GET a single record; ``None`` when the API answers 404."""

        response = self._call("GET", path, ok=(200, 404))
        if response.status_code == 404:
            return None
        return response.json()


def _unwrap_list(payload: Any, key: str) -> List[Mapping[str, Any]]:
    if isinstance(payload, Mapping):
        for candidate in (key, "data", "results", "items"):
            if isinstance(payload.get(candidate), list):
                payload = payload[candidate]
                break
    if not isinstance(payload, list):
        raise ClinicAPIError(f"Expected a list of {key} in clinic records API response")
    return [item for item in payload if isinstance(item, Mapping)]


class ClinicStoreClient(ClinicBaseClient):
    """Appointment persistence backed by the clinic records API."""

    def load_active_appointments(self, clinic_id: str) -> Sequence[Appointment]:
        if not clinic_id:
            raise ValueError("clinic_id must be provided")
        response = self._call(
            "GET",
            f"clinics/{clinic_id}/appointments",
            params={"active": "true", "order": "scheduled_start"},
        )
        rows = _unwrap_list(response.json(), "appointments")
        appointments = [Appointment.from_row(row) for row in rows]
        logger.debug("Loaded %d active appointments for clinic %s", len(appointments), clinic_id)
        return appointments

    def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        if not appointment_id:
            raise ValueError("appointment_id must be provided")
        payload = self._record(f"appointments/{appointment_id}")
        return Appointment.from_row(payload) if payload else None

    def persist_appointment(self, appointment: Appointment) -> None:
        # PUT keyed by id so a retried write replaces instead of duplicating.
        self._call(
            "PUT",
            f"appointments/{appointment.appointment_id}",
            body=appointment.to_dict(),
            ok=(200, 201, 204),
        )

    def update_status(self, appointment_id: str, status: AppointmentStatus) -> None:
        self._call(
            "PATCH",
            f"appointments/{appointment_id}",
            body={"status": status.value, "status_name": status.label},
            ok=(200, 204),
        )

    def update_interval(self, appointment_id: str, interval: TimeInterval) -> None:
        self._call(
            "PATCH",
            f"appointments/{appointment_id}",
            body={
                "scheduled_start": interval.start.isoformat(),
                "scheduled_end": interval.end.isoformat(),
            },
            ok=(200, 204),
        )


class ClinicCatalogClient(ClinicBaseClient):
    """Read-only catalog lookups against the clinic records API."""

    def get_clinic(self, clinic_id: str) -> Optional[Clinic]:
        row = self._record(f"clinics/{clinic_id}")
        if row is None:
            return None
        return Clinic(
            clinic_id=str(row.get("clinic_id", clinic_id)),
            name=str(row.get("name", "")),
            address=str(row.get("address", "")),
            city=str(row.get("city", "")),
            phone=row.get("phone"),
            email=row.get("email"),
            is_active=bool(row.get("is_active", True)),
        )

    def get_doctor(self, doctor_id: str) -> Optional[Doctor]:
        row = self._record(f"doctors/{doctor_id}")
        if row is None:
            return None
        return Doctor(
            doctor_id=str(row.get("doctor_id", doctor_id)),
            clinic_id=str(row["clinic_id"]),
            license_number=str(row.get("license_number", "")),
            specialty=row.get("specialty"),
            is_active=bool(row.get("is_active", True)),
        )

    def get_room(self, room_id: str) -> Optional[Room]:
        row = self._record(f"rooms/{room_id}")
        if row is None:
            return None
        return Room(
            room_id=str(row.get("room_id", room_id)),
            clinic_id=str(row["clinic_id"]),
            name=str(row.get("name", "")),
            capacity=int(row.get("capacity", 1)),
            is_active=bool(row.get("is_active", True)),
        )

    def get_service(self, service_id: str) -> Optional[Service]:
        row = self._record(f"services/{service_id}")
        if row is None:
            return None
        duration = row.get("default_duration_minutes")
        return Service(
            service_id=str(row.get("service_id", service_id)),
            code=str(row.get("code", "")),
            name=str(row.get("name", "")),
            default_duration_minutes=int(duration) if duration else None,
        )

    def get_doctor_service(self, doctor_id: str, service_id: str) -> Optional[DoctorService]:
        row = self._record(f"doctors/{doctor_id}/services/{service_id}")
        if row is None:
            return None
        return DoctorService(
            doctor_id=doctor_id,
            service_id=service_id,
            duration_minutes=int(row.get("consultation_duration_minutes", 30)),
        )

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        row = self._record(f"patients/{patient_id}")
        if row is None:
            return None
        return Patient(patient_id=str(row.get("patient_id", patient_id)), clinic_id=str(row["clinic_id"]))


class WebhookEventSink(ClinicBaseClient):
    """Posts change events to the clinic records webhook."""

    def __init__(self, *, webhook_url: str = DEFAULT_WEBHOOK_URL, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not webhook_url:
            raise ValueError("webhook_url must be provided")
        self.webhook_url = webhook_url

    def handle(self, event: ChangeEvent) -> None:
        self._call(
            "POST",
            "",
            url=self.webhook_url,
            body=event.to_dict(),
            headers={"Idempotency-Key": event.event_id},
            ok=(200, 201, 202, 204),
        )
        logger.debug("Event %s delivered to %s", event.event_id, self.webhook_url)
