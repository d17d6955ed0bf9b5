from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import FrozenSet, Optional
import logging

import bcrypt
import jwt
from fastapi import APIRouter, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from ..config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES, REFRESH_TOKEN_EXPIRE_DAYS
from ..database.connection import get_db
from ..database.models import User, UserRole, SubAdminPermission, AuditLog
from ..errors import Conflict, PermissionDenied, Unauthenticated

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])
security = HTTPBearer(auto_error=False)

# ==================== CAPABILITIES ====================

class Capability(str, Enum):
    VIEW_PATIENTS = "can_view_patients"
    EDIT_PATIENTS = "can_edit_patients"
    VIEW_DOCTORS = "can_view_doctors"
    EDIT_DOCTORS = "can_edit_doctors"
    VIEW_APPOINTMENTS = "can_view_appointments"
    EDIT_APPOINTMENTS = "can_edit_appointments"
    VIEW_BILLING = "can_view_billing"
    EDIT_BILLING = "can_edit_billing"
    VIEW_ANALYTICS = "can_view_analytics"
    MANAGE_USERS = "can_manage_users"


class Permissions(BaseModel):
    """Named capability flags of a sub-admin. Column names match SubAdminPermission."""
    can_view_patients: bool = False
    can_edit_patients: bool = False
    can_view_doctors: bool = False
    can_edit_doctors: bool = False
    can_view_appointments: bool = False
    can_edit_appointments: bool = False
    can_view_billing: bool = False
    can_edit_billing: bool = False
    can_view_analytics: bool = False
    can_manage_users: bool = False

    @classmethod
    def from_row(cls, row: SubAdminPermission) -> "Permissions":
        return cls(**{cap.value: bool(getattr(row, cap.value)) for cap in Capability})

    @classmethod
    def all_granted(cls) -> "Permissions":
        return cls(**{cap.value: True for cap in Capability})

    def granted(self) -> FrozenSet[Capability]:
        return frozenset(cap for cap in Capability if getattr(self, cap.value))


# ==================== REQUEST CONTEXT ====================

@dataclass(frozen=True)
class AuthContext:
    """Who is calling, resolved once per request from the bearer token."""
    user_id: str
    email: str
    role: UserRole
    profile_id: Optional[str] = None
    capabilities: FrozenSet[Capability] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SUB_ADMIN)

    def can(self, capability: Capability) -> bool:
        if self.is_admin:
            return True
        return self.role == UserRole.SUB_ADMIN and capability in self.capabilities


# ==================== PYDANTIC MODELS ====================

class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    user: dict

# ==================== HELPER FUNCTIONS ====================

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(plain_password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode(), password_hash.encode())
    except ValueError:
        return False


def create_access_token(data: dict) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    now = datetime.utcnow()
    to_encode.update({
        "exp": now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
        "iat": now,
        "type": "access"
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_refresh_token(data: dict) -> str:
    """Create JWT refresh token"""
    to_encode = data.copy()
    now = datetime.utcnow()
    to_encode.update({
        "exp": now + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
        "iat": now,
        "type": "refresh"
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token has expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token")


def issue_tokens(user: User) -> dict:
    access_token = create_access_token(data={
        "user_id": user.id,
        "email": user.email,
        "role": user.role
    })
    refresh_token = create_refresh_token(data={"user_id": user.id})
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": "bearer",
        "user": serialize_user(user)
    }


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "phone": user.phone,
        "role": user.role,
        "department": user.department,
        "sub_admin_type": user.sub_admin_type,
        "is_active": user.is_active,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def log_action(db: Session, user_id: Optional[str], action: str, entity_type: str, entity_id: str, details: dict):
    """Add an audit row; the caller commits."""
    db.add(AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details
    ))


def resolve_profile_id(user: User) -> Optional[str]:
    if user.role == UserRole.PATIENT.value and user.patient_profile:
        return user.patient_profile.id
    if user.role == UserRole.DOCTOR.value and user.doctor_profile:
        return user.doctor_profile.id
    return None


def build_auth_context(user: User) -> AuthContext:
    capabilities: FrozenSet[Capability] = frozenset()
    if user.role == UserRole.SUB_ADMIN.value:
        granted = set()
        for row in user.permissions:
            granted |= Permissions.from_row(row).granted()
        capabilities = frozenset(granted)

    return AuthContext(
        user_id=user.id,
        email=user.email,
        role=UserRole(user.role),
        profile_id=resolve_profile_id(user),
        capabilities=capabilities,
    )

# ==================== DEPENDENCIES ====================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Resolve the bearer token into an active User.
    Use this in protected routes: current_user: User = Depends(get_current_user)
    """
    if credentials is None:
        raise Unauthenticated("Missing bearer token")

    payload = decode_token(credentials.credentials)
    if payload.get("type") != "access":
        raise Unauthenticated("Invalid token type")

    user_id = payload.get("user_id")
    if not user_id:
        raise Unauthenticated("Invalid token payload")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise Unauthenticated("User not found")
    if not user.is_active:
        raise Unauthenticated("Account is disabled")

    return user


async def get_auth_context(current_user: User = Depends(get_current_user)) -> AuthContext:
    return build_auth_context(current_user)


def require_roles(*roles: UserRole):
    """Dependency factory: only the listed roles get through."""
    async def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.role not in roles:
            raise PermissionDenied("You do not have access to this resource")
        return auth
    return dependency


def require_access(capability: Capability, *roles: UserRole):
    """
    Dependency factory for staff-gated operations.

    Admins always pass, sub-admins pass when they hold ``capability`` and the
    extra ``roles`` (e.g. doctor, patient) pass unconditionally; ownership
    checks for those roles stay in the endpoint.
    """
    async def dependency(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if auth.can(capability) or auth.role in roles:
            return auth
        raise PermissionDenied(f"Missing permission: {capability.value}")
    return dependency

# ==================== API ENDPOINTS ====================

@router.post("/signup", response_model=AuthResponse, status_code=201)
async def signup(
    request: SignupRequest,
    db: Session = Depends(get_db)
):
    """
    📝 Patient self-registration.
    Doctor, admin and sub-admin accounts are created by administrators.
    """
    if db.query(User).filter(User.email == request.email).first():
        raise Conflict(f"User with email {request.email} already exists")

    user = User(
        email=request.email,
        password_hash=hash_password(request.password),
        first_name=request.first_name,
        last_name=request.last_name,
        phone=request.phone,
        role=UserRole.PATIENT.value,
        is_active=True
    )
    db.add(user)
    db.flush()

    log_action(db, user.id, "SIGNUP", "user", user.id, {"email": user.email})
    db.commit()
    db.refresh(user)

    logger.info(f"New patient account registered: {user.id}")
    return issue_tokens(user)


@router.post("/login", response_model=AuthResponse)
async def login(
    request: LoginRequest,
    db: Session = Depends(get_db)
):
    user = db.query(User).filter(User.email == request.email).first()
    if not user or not verify_password(request.password, user.password_hash):
        raise Unauthenticated("Invalid email or password")
    if not user.is_active:
        raise Unauthenticated("Account is disabled")

    log_action(db, user.id, "LOGIN_SUCCESS", "auth", user.id, {"email": user.email})
    db.commit()

    return issue_tokens(user)


@router.post("/refresh", response_model=dict)
async def refresh_access_token(
    request: RefreshTokenRequest,
    db: Session = Depends(get_db)
):
    """
    🔄 Refresh Access Token
    """
    payload = decode_token(request.refresh_token)
    if payload.get("type") != "refresh":
        raise Unauthenticated("Invalid token type. Must be refresh token.")

    user = db.query(User).filter(User.id == payload.get("user_id")).first()
    if not user or not user.is_active:
        raise Unauthenticated("User not found")

    return {
        "access_token": create_access_token(data={
            "user_id": user.id,
            "email": user.email,
            "role": user.role
        }),
        "token_type": "bearer"
    }


@router.get("/me", response_model=dict)
async def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """
    👤 Current user with resolved profile id.
    """
    auth = build_auth_context(current_user)
    info = serialize_user(current_user)
    info["profile_id"] = auth.profile_id
    return info
