from datetime import datetime
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..database.connection import get_db
from ..database.models import User, UserRole
from ..errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from .auth import AuthContext, Capability, hash_password, log_action, require_access, serialize_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["Users"])

# ==================== PYDANTIC MODELS ====================

class UserCreate(BaseModel):
    """Staff-created account; sub-admins go through /api/admin/sub-admins"""
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    role: UserRole = UserRole.DOCTOR


class UserStatusUpdate(BaseModel):
    is_active: bool

# ==================== HELPER FUNCTIONS ====================

def get_user_or_404(db: Session, user_id: str) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotFound("User not found")
    return user


def create_user(db: Session, auth: AuthContext, data: UserCreate) -> User:
    if data.role == UserRole.SUB_ADMIN:
        raise ValidationFailed("Sub-admins are created with their department permissions")
    if data.role == UserRole.ADMIN and not auth.is_admin:
        raise PermissionDenied("Only administrators can create administrator accounts")
    if db.query(User).filter(User.email == data.email).first():
        raise Conflict(f"User with email {data.email} already exists")

    user = User(
        email=data.email,
        password_hash=hash_password(data.password),
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        role=data.role.value,
        is_active=True
    )
    db.add(user)
    db.flush()
    return user

# ==================== API ENDPOINTS ====================

@router.get("", response_model=dict)
async def list_users(
    role: Optional[UserRole] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(require_access(Capability.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    query = db.query(User)
    if role:
        query = query.filter(User.role == role.value)
    if is_active is not None:
        query = query.filter(User.is_active == is_active)
    if search:
        pattern = f"%{search}%"
        query = query.filter(or_(
            User.first_name.ilike(pattern),
            User.last_name.ilike(pattern),
            User.email.ilike(pattern)
        ))

    total = query.count()
    users = query.order_by(User.created_at.desc()).offset(offset).limit(limit).all()
    return {"users": [serialize_user(u) for u in users], "total": total}


@router.get("/{user_id}", response_model=dict)
async def get_user(
    user_id: str,
    auth: AuthContext = Depends(require_access(Capability.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    return serialize_user(get_user_or_404(db, user_id))


@router.post("", response_model=dict, status_code=201)
async def create_user_endpoint(
    request: UserCreate,
    auth: AuthContext = Depends(require_access(Capability.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    user = create_user(db, auth, request)
    log_action(db, auth.user_id, "USER_CREATED", "user", user.id, {"role": user.role})
    db.commit()
    db.refresh(user)

    logger.info(f"{user.role} account {user.id} created by {auth.user_id}")
    return serialize_user(user)


@router.put("/{user_id}/status", response_model=dict)
async def set_user_status(
    user_id: str,
    request: UserStatusUpdate,
    auth: AuthContext = Depends(require_access(Capability.MANAGE_USERS)),
    db: Session = Depends(get_db)
):
    """
    🔒 Activate or deactivate an account
    """
    user = get_user_or_404(db, user_id)
    if user.id == auth.user_id:
        raise ValidationFailed("You cannot change the status of your own account")
    if user.role == UserRole.ADMIN.value and not auth.is_admin:
        raise PermissionDenied("Only administrators can change administrator accounts")

    user.is_active = request.is_active
    user.updated_at = datetime.now()

    log_action(db, auth.user_id, "USER_ACTIVATED" if request.is_active else "USER_DEACTIVATED", "user", user.id, {})
    db.commit()
    db.refresh(user)
    return serialize_user(user)
