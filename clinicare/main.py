import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
import uvicorn

from . import __version__
from .api import (
    admin_router,
    analytics_router,
    appointments_router,
    auth_router,
    billing_router,
    doctors_router,
    notifications_router,
    patients_router,
    prescriptions_router,
    reviews_router,
    telemedicine_router,
    upload_router,
    users_router,
)
from .config import CORS_ORIGINS, LOG_LEVEL, UPLOAD_DIR
from .database.connection import engine, Base
from .errors import register_exception_handlers

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Clinicare API",
    description="Clinic management backend: patients, doctors, appointments, billing and telemedicine",
    version=__version__
)

# Serve uploaded files
Path(UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Include routers
app.include_router(auth_router)
app.include_router(patients_router)
app.include_router(doctors_router)
app.include_router(appointments_router)
app.include_router(billing_router)
app.include_router(telemedicine_router)
app.include_router(prescriptions_router)
app.include_router(analytics_router)
app.include_router(reviews_router)
app.include_router(admin_router)
app.include_router(users_router)
app.include_router(notifications_router)
app.include_router(upload_router)


@app.get("/")
async def root():
    return {
        "message": "Clinicare API",
        "status": "running",
        "version": __version__,
        "endpoints": {
            "auth": "/api/auth",
            "patients": "/api/patients",
            "doctors": "/api/doctors",
            "appointments": "/api/appointments",
            "bills": "/api/bills",
            "telemedicine": "/api/telemedicine/sessions",
            "analytics": "/api/analytics",
            "reviews": "/api/reviews",
            "admin": "/api/admin",
            "users": "/api/users",
            "notifications": "/api/notifications",
            "files": "/api/files",
            "docs": "/docs"
        }
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


def run():
    uvicorn.run("clinicare.main:app", host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
