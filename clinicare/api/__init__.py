# API Package - Centralized imports
# Allows easy importing of all routers and the auth dependencies

from .auth import router as auth_router, get_current_user, get_auth_context, create_access_token, create_refresh_token
from .patients import router as patients_router
from .doctors import router as doctors_router
from .appointments import router as appointments_router
from .billing import router as billing_router
from .telemedicine import router as telemedicine_router
from .prescriptions import router as prescriptions_router
from .analytics import router as analytics_router
from .reviews import router as reviews_router
from .admin import router as admin_router
from .users import router as users_router
from .notifications import router as notifications_router
from .upload import router as upload_router

__all__ = [
    # Auth
    "auth_router",
    "get_current_user",
    "get_auth_context",
    "create_access_token",
    "create_refresh_token",

    # Routers
    "patients_router",
    "doctors_router",
    "appointments_router",
    "billing_router",
    "telemedicine_router",
    "prescriptions_router",
    "analytics_router",
    "reviews_router",
    "admin_router",
    "users_router",
    "notifications_router",
    "upload_router",
]
