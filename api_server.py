"""FastAPI REST API server for MedLove Reminder Service.

This module provides HTTP endpoints for the MedLove front end: user
profiles, medication schedules, marking doses taken, streaks, logs and
dashboard stats, plus operational triggers for the reminder sweep.

Identity: every user-scoped endpoint reads the `X-User-Id` header, which
must name a registered user; anything else is rejected with 401.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import crud
import schemas
import database
from config import settings
from errors import (
    AlreadyTakenError, DeliveryError, NotFoundError, StoreError, UnauthenticatedError,
)
from matcher import local_date
from services import build_scheduler
from logger_config import setup_core_loggers, setup_logger

logger = setup_logger(__name__, 'api.log')
setup_core_loggers('api.log')


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.init_db(database.engine)
    app.state.scheduler = build_scheduler(settings, database.SessionLocal)
    logger.info("API scheduler initialised")
    yield


# Create FastAPI application
app = FastAPI(
    title="MedLove Reminder API",
    description="Medication schedules, email reminders and adherence streaks",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

origins = [
    "http://localhost:3000",      # Next.js dev server
    settings.APP_URL,
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

@app.exception_handler(UnauthenticatedError)
async def unauthenticated_handler(request: Request, exc: UnauthenticatedError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AlreadyTakenError)
async def already_taken_handler(request: Request, exc: AlreadyTakenError):
    return JSONResponse(status_code=409, content={"detail": "Medication already taken today"})


@app.exception_handler(DeliveryError)
async def delivery_error_handler(request: Request, exc: DeliveryError):
    logger.error(f"Failed to send email reminder: {exc}")
    return JSONResponse(status_code=502, content={"detail": "Failed to send email reminder"})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_scheduler(request: Request):
    """The scheduler built at startup."""
    return request.app.state.scheduler


def get_clock():
    """Current time source; overridden in tests."""
    return lambda: datetime.now(timezone.utc)


def get_current_user_id(
    x_user_id: Optional[str] = Header(None),
    db: Session = Depends(database.get_db)
) -> str:
    """Resolve the authenticated subject or raise UnauthenticatedError."""
    if not x_user_id or crud.get_user(db, x_user_id) is None:
        raise UnauthenticatedError("User must be authenticated")
    return x_user_id


def _today(clock, scheduler) -> date:
    return local_date(clock(), scheduler.config.timezone)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

@app.get("/")
def root():
    """Root endpoint - service information"""
    return {
        "service": "MedLove Reminder API",
        "version": "1.0.0",
        "status": "healthy",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "medications": "/medications",
            "stats": "/stats"
        }
    }


@app.get("/health")
def health_check():
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "service": "medlove_reminder_service",
        "database": settings.DATABASE_URL.split("://")[0],
        "timezone": settings.TIMEZONE,
    }


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@app.post("/users", response_model=schemas.UserProfile, status_code=201)
def register_user(user: schemas.UserCreate, db: Session = Depends(database.get_db)):
    """Register the profile reminders are addressed to."""
    try:
        return crud.create_user(db, user.model_dump())
    except IntegrityError:
        raise HTTPException(status_code=409, detail="User already registered")


@app.get("/users/me", response_model=schemas.UserProfile)
def get_me(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """Profile of the calling user, including the notification counter."""
    return crud.get_user(db, user_id)


# ---------------------------------------------------------------------------
# Medications
# ---------------------------------------------------------------------------

@app.post("/medications", response_model=schemas.MedicationEntry, status_code=201)
def create_medication(
    medication: schemas.MedicationCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """Create a medication schedule.

    Request body example:
    ```json
    {
        "name": "Vitamin D",
        "dosage": "1 tablet",
        "times": ["08:00", "20:00"]
    }
    ```
    """
    return crud.create_medication(db, user_id, medication.model_dump())


@app.get("/medications", response_model=List[schemas.MedicationEntry])
def list_medications(
    active_only: bool = Query(False, description="Only medications still due today"),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    return crud.get_medications_by_user(db, user_id, active_only)


@app.get("/medications/{medication_id}", response_model=schemas.MedicationEntry)
def get_medication(
    medication_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    medication = crud.get_medication(db, medication_id, user_id)
    if not medication:
        raise HTTPException(status_code=404, detail="Medication not found")
    return medication


@app.put("/medications/{medication_id}", response_model=schemas.MedicationEntry)
def update_medication(
    medication_id: str,
    updates: schemas.MedicationUpdate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """Update a medication. Only provided fields are changed."""
    medication = crud.update_medication(db, medication_id, user_id, updates.model_dump(exclude_unset=True))
    if not medication:
        raise HTTPException(status_code=404, detail="Medication not found")
    return medication


@app.delete("/medications/{medication_id}", status_code=200)
def delete_medication(
    medication_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    if not crud.delete_medication(db, medication_id, user_id):
        raise HTTPException(status_code=404, detail="Medication not found")
    return {"message": "Medication deleted successfully", "medication_id": medication_id}


@app.post("/medications/{medication_id}/taken", response_model=schemas.DoseTakenResponse)
async def mark_taken(
    medication_id: str,
    user_id: str = Depends(get_current_user_id),
    scheduler=Depends(get_scheduler),
    clock=Depends(get_clock)
):
    """Mark today's dose taken.

    Stops pending follow-up emails and updates the streak.
    Returns 409 if a dose was already marked taken today.
    """
    now = clock()
    streak = await scheduler.on_dose_taken(user_id, medication_id, now)
    return schemas.DoseTakenResponse(
        medication_id=medication_id,
        date=local_date(now, scheduler.config.timezone),
        streak=streak,
    )


# ---------------------------------------------------------------------------
# Streaks, logs, stats
# ---------------------------------------------------------------------------

@app.get("/streaks/{medication_id}", response_model=schemas.StreakRecord)
def get_streak(
    medication_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    """Streak for one medication; zero state if no dose was ever taken."""
    if not crud.get_medication(db, medication_id, user_id):
        raise HTTPException(status_code=404, detail="Medication not found")
    streak = crud.get_streak(db, user_id, medication_id)
    if streak is None:
        return schemas.StreakRecord(user_id=user_id, medication_id=medication_id)
    return streak


@app.get("/medication-logs", response_model=List[schemas.ReminderRecord])
def list_medication_logs(
    medication_id: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    status: Optional[str] = Query(None, pattern="^(reminder_sent|taken)$"),
    limit: int = Query(100, ge=1, le=1000),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db)
):
    return crud.get_logs_by_user(db, user_id, medication_id, start_date, end_date, status, limit)


@app.get("/stats", response_model=schemas.StatsResponse)
def get_stats(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(database.get_db),
    scheduler=Depends(get_scheduler),
    clock=Depends(get_clock)
):
    return crud.get_user_stats(db, user_id, _today(clock, scheduler))


# ---------------------------------------------------------------------------
# Reminders and scheduler triggers
# ---------------------------------------------------------------------------

@app.post("/reminders/send")
async def send_reminder_now(
    request: schemas.ManualReminderRequest,
    user_id: str = Depends(get_current_user_id),
    scheduler=Depends(get_scheduler),
    clock=Depends(get_clock)
):
    """Send a reminder email for one medication immediately."""
    receipt = await scheduler.send_manual_reminder(user_id, request.medication_id, clock())
    return {
        "success": True,
        "message_id": receipt.message_id,
        "message": "Email reminder sent successfully!",
    }


@app.post("/scheduler/tick", response_model=schemas.TickResponse)
async def trigger_tick(scheduler=Depends(get_scheduler), clock=Depends(get_clock)):
    """Run one sweep now (for an external cron instead of the worker)."""
    result = await scheduler.on_tick(clock())
    return schemas.TickResponse(
        checked_at=result.checked_at,
        dispatched=result.dispatched,
        follow_ups_sent=result.follow_ups_sent,
    )


@app.post("/scheduler/reset-daily")
async def trigger_daily_reset(scheduler=Depends(get_scheduler), clock=Depends(get_clock)):
    """Day rollover hook: reactivate medications taken on earlier days."""
    count = await scheduler.on_day_rollover(clock())
    return {"reactivated": count}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )
