"""
Clinic API Server.

A FastAPI rendition of the backend endpoints the scheduling core consumes:
therapy session start/end and appointment range queries. Backed by an
in-memory store; used for integration tests and local development.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from healtrack.config import configure_logging
from healtrack.models.appointment import Appointment, AppointmentStatus
from healtrack.models.session import ImageRef

# ============================================================================
# Request Models
# ============================================================================


class StartTherapyRequest(BaseModel):
    """Body of a therapy start request."""

    presession_remarks: str = Field(default="")
    presession_images: List[ImageRef] = Field(default_factory=list)


class EndTherapyRequest(BaseModel):
    """Body of a therapy end request."""

    postsession_remarks: str = Field(default="")
    postsession_images: List[ImageRef] = Field(default_factory=list)


# ============================================================================
# In-Memory Data Store
# ============================================================================


class ClinicStore:
    """
    In-memory appointment store.

    ``horizon`` bounds the days the clinic has data for. Range queries list
    every day inside it (empty days included) and omit days outside it,
    which is how clients detect that a direction is exhausted.
    """

    def __init__(self, horizon: Optional[Tuple[date, date]] = None):
        self._appointments: Dict[str, Appointment] = {}
        self._remarks: Dict[str, Dict[str, object]] = {}
        self._lock = asyncio.Lock()
        self.horizon = horizon

    # Public accessors for testing
    @property
    def appointments(self) -> Dict[str, Appointment]:
        return self._appointments

    @property
    def remarks(self) -> Dict[str, Dict[str, object]]:
        return self._remarks

    def reset(self, horizon: Optional[Tuple[date, date]] = None) -> None:
        self._appointments.clear()
        self._remarks.clear()
        self.horizon = horizon

    def add(self, appointment: Appointment) -> Appointment:
        self._appointments[appointment.id] = appointment
        return appointment

    def seed_sample_data(self, today: Optional[date] = None, days_back: int = 30, days_ahead: int = 30) -> None:
        """Populate a month either side of today with weekday appointments."""
        today = today or date.today()
        self.horizon = (today - timedelta(days=days_back), today + timedelta(days=days_ahead))

        patients = [
            ("pat-001", "Asha Rao", "Physiotherapy"),
            ("pat-002", "Vikram Shah", "Video Consultation"),
            ("pat-003", "Meera Iyer", "Occupational Therapy"),
        ]
        day = self.horizon[0]
        while day <= self.horizon[1]:
            if day.weekday() < 5:
                for hour, (patient_id, patient_name, therapy_type) in zip((10, 14, 17), patients):
                    appointment_id = uuid4().hex
                    self.add(
                        Appointment(
                            id=appointment_id,
                            plan_id=f"plan-{patient_id}",
                            patient_id=patient_id,
                            therapy_type=therapy_type,
                            date=day,
                            start_time=time(hour),
                            end_time=time(hour, 45),
                            status=(
                                AppointmentStatus.COMPLETED if day < today else AppointmentStatus.SCHEDULED
                            ),
                            patient_name=patient_name,
                            doctor_name="Kavya Menon",
                        )
                    )
            day += timedelta(days=1)

        logger.info(f"Initialized {len(self._appointments)} sample appointments")

    def get_range(self, start_date: date, end_date: date) -> Dict[date, List[Appointment]]:
        """Get appointments grouped by day, limited to the data horizon."""
        if self.horizon is not None:
            start_date = max(start_date, self.horizon[0])
            end_date = min(end_date, self.horizon[1])

        result: Dict[date, List[Appointment]] = {}
        day = start_date
        while day <= end_date:
            result[day] = []
            day += timedelta(days=1)

        for appointment in self._appointments.values():
            if appointment.date in result:
                result[appointment.date].append(appointment)

        for items in result.values():
            items.sort(key=lambda a: a.start_time)
        return result

    async def set_status(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        new_status: AppointmentStatus,
        details: Dict[str, object],
    ) -> Appointment:
        """Move an appointment between statuses, raising KeyError or ValueError."""
        async with self._lock:
            appointment = self._appointments[appointment_id]
            if appointment.status is not expected:
                raise ValueError(
                    f"appointment {appointment_id} is {appointment.status.value}, "
                    f"expected {expected.value}"
                )
            updated = appointment.model_copy(update={"status": new_status})
            self._appointments[appointment_id] = updated
            self._remarks.setdefault(appointment_id, {}).update(details)
            return updated


# Global store instance
store = ClinicStore()


# ============================================================================
# FastAPI Application
# ============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Clinic API Server")
    if not store.appointments:
        store.seed_sample_data()
    yield
    logger.info("Shutting down Clinic API Server")


app = FastAPI(
    title="HealTrack Clinic API",
    description="Therapy session and appointment endpoints",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_token(authorization: Optional[str] = Header(default=None)) -> str:
    """Reject requests without a bearer token."""
    if not authorization or not authorization.startswith("Bearer ") or not authorization[7:].strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )
    return authorization[7:].strip()


# ============================================================================
# API Endpoints
# ============================================================================


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.post("/therapy/start/{appointment_id}")
async def start_therapy(
    appointment_id: str,
    request: StartTherapyRequest,
    token: str = Depends(require_token),
):
    """Mark a scheduled appointment's therapy session as started."""
    try:
        appointment = await store.set_status(
            appointment_id,
            AppointmentStatus.SCHEDULED,
            AppointmentStatus.IN_PROGRESS,
            {
                "presession_remarks": request.presession_remarks,
                "presession_images": len(request.presession_images),
            },
        )
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return {"success": True, "appointment_id": appointment.id, "status": appointment.status.value}


@app.post("/therapy/end/{appointment_id}")
async def end_therapy(
    appointment_id: str,
    request: EndTherapyRequest,
    token: str = Depends(require_token),
):
    """Mark an in-progress therapy session as completed."""
    try:
        appointment = await store.set_status(
            appointment_id,
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.COMPLETED,
            {
                "postsession_remarks": request.postsession_remarks,
                "postsession_images": len(request.postsession_images),
            },
        )
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return {"success": True, "appointment_id": appointment.id, "status": appointment.status.value}


@app.get("/appointments/range")
async def get_appointment_range(
    start_date: date = Query(..., description="First day of the range"),
    end_date: date = Query(..., description="Last day of the range"),
    token: str = Depends(require_token),
):
    """
    Get appointments grouped by day for an inclusive date range.

    Days outside the clinic's data horizon are omitted from the response.
    """
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end_date precedes start_date",
        )
    if (end_date - start_date).days > 92:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Range too large",
        )

    grouped = store.get_range(start_date, end_date)
    return {
        "appointments_by_date": {
            day.isoformat(): [a.model_dump(mode="json", by_alias=True) for a in items]
            for day, items in grouped.items()
        }
    }


# ============================================================================
# Run Server
# ============================================================================


def run_server(host: str = "0.0.0.0", port: int = 8080):
    """Run the clinic API server."""
    import uvicorn

    configure_logging()
    uvicorn.run(
        "healtrack.api.clinic_server:app",
        host=host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run_server()
