from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode
import hashlib
import hmac
import logging
import time

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from ..config import (
    LAB_REPORTS_BUCKET, MAX_UPLOAD_SIZE, PUBLIC_BASE_URL, SECRET_KEY, UPLOAD_DIR, UPLOAD_URL_TTL_SECONDS
)
from ..database.models import UserRole
from ..errors import PermissionDenied, ValidationFailed
from .auth import AuthContext, get_auth_context

router = APIRouter(prefix="/api/files", tags=["File Upload"])
logger = logging.getLogger(__name__)

UPLOAD_ROLES = (UserRole.DOCTOR, UserRole.ADMIN)

# ==================== PYDANTIC MODELS ====================

class UploadUrlRequest(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    content_type: Optional[str] = Field(None, max_length=100)


class UploadUrlResponse(BaseModel):
    upload_url: str
    access_url: str
    object_name: str
    expires_at: datetime

# ==================== HELPER FUNCTIONS ====================

def clean_filename(filename: str) -> str:
    """Strip any path, refuse traversal."""
    name = Path(filename).name
    if not name or name in (".", "..") or "/" in name or "\\" in name:
        raise ValidationFailed("Invalid filename")
    return name


def build_object_name(user_id: str, filename: str, now_ms: Optional[int] = None) -> str:
    """<user_id>/<epoch ms>-<filename>"""
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{user_id}/{now_ms}-{clean_filename(filename)}"


def sign_object(object_name: str, expires: int) -> str:
    message = f"{LAB_REPORTS_BUCKET}/{object_name}:{expires}".encode()
    return hmac.new(SECRET_KEY.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(object_name: str, expires: int, signature: str, now: Optional[float] = None):
    now = now if now is not None else time.time()
    if expires < now:
        raise PermissionDenied("Upload URL has expired")
    if not hmac.compare_digest(sign_object(object_name, expires), signature):
        raise PermissionDenied("Invalid upload signature")


def create_signed_upload_url(user_id: str, filename: str) -> dict:
    object_name = build_object_name(user_id, filename)
    expires = int(time.time()) + UPLOAD_URL_TTL_SECONDS
    query = urlencode({"expires": expires, "signature": sign_object(object_name, expires)})

    return {
        "upload_url": f"{PUBLIC_BASE_URL}/api/files/{LAB_REPORTS_BUCKET}/{quote(object_name)}?{query}",
        "access_url": f"{PUBLIC_BASE_URL}/uploads/{LAB_REPORTS_BUCKET}/{quote(object_name)}",
        "object_name": object_name,
        "expires_at": datetime.fromtimestamp(expires),
    }


def storage_path(object_name: str) -> Path:
    base = (Path(UPLOAD_DIR) / LAB_REPORTS_BUCKET).resolve()
    target = (base / object_name).resolve()
    if base not in target.parents:
        raise ValidationFailed("Invalid object name")
    return target

# ==================== API ENDPOINTS ====================

@router.post("/lab-report/upload-url", response_model=UploadUrlResponse)
async def create_lab_report_upload_url(
    request: UploadUrlRequest,
    auth: AuthContext = Depends(get_auth_context)
):
    """
    📤 Signed one-hour URL for uploading a lab report
    """
    if auth.role not in UPLOAD_ROLES:
        raise PermissionDenied("Only doctors and admins can upload lab reports")

    signed = create_signed_upload_url(auth.user_id, request.filename)
    logger.info(f"Upload URL issued to {auth.user_id} for {signed['object_name']}")
    return signed


@router.put(f"/{LAB_REPORTS_BUCKET}/{{object_name:path}}", response_model=dict)
async def upload_lab_report(
    object_name: str,
    request: Request,
    expires: int = Query(...),
    signature: str = Query(...)
):
    """
    Receives the raw file body. Authorized by the URL signature alone.
    """
    verify_signature(object_name, expires, signature)

    content = await request.body()
    if len(content) > MAX_UPLOAD_SIZE:
        raise ValidationFailed(f"File exceeds maximum size of {MAX_UPLOAD_SIZE // (1024 * 1024)}MB")

    path = storage_path(object_name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)

    logger.info(f"Stored lab report {object_name} ({len(content)} bytes)")
    return {
        "object_name": object_name,
        "size": len(content),
        "access_url": f"{PUBLIC_BASE_URL}/uploads/{LAB_REPORTS_BUCKET}/{quote(object_name)}",
    }
