import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import bookings, internal, lessons, misc, payments, recurring_lessons
from .config import get_settings
from .db.session import Base, engine
from .workers.scheduler import get_scheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="CoachHub Booking API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(bookings.router, prefix="/api/v1")
app.include_router(recurring_lessons.router, prefix="/api/v1")
app.include_router(lessons.router, prefix="/api/v1")
app.include_router(payments.router, prefix="/api/v1")
app.include_router(internal.router, prefix="/api/v1")
app.include_router(misc.router, prefix="/api/v1")


@app.on_event("startup")
async def startup_event() -> None:
    settings = get_settings()
    if settings.env == "dev":
        Base.metadata.create_all(bind=engine)
    if settings.run_scheduler:
        scheduler = get_scheduler()
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info("Booking sweeper scheduled", extra={"interval_minutes": settings.sweep_interval_minutes})


@app.on_event("shutdown")
async def shutdown_event() -> None:
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.shutdown(wait=False)
