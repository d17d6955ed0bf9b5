from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy import distinct, func
from sqlalchemy.orm import Session, joinedload

from ..database.connection import get_db
from ..database.models import Department, Doctor, SubAdminPermission, User, UserRole
from ..errors import Conflict, NotFound, PermissionDenied
from .auth import (
    AuthContext, Permissions, get_auth_context, hash_password, log_action, require_roles, serialize_user
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Administration"])

admin_only = require_roles(UserRole.ADMIN)

# ==================== PYDANTIC MODELS ====================

class DepartmentCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    head_doctor_id: Optional[str] = None
    max_staff_capacity: int = Field(100, ge=0)
    is_active: bool = True


class DepartmentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    head_doctor_id: Optional[str] = None
    max_staff_capacity: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class DepartmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: Optional[str] = None
    head_doctor_id: Optional[str] = None
    max_staff_capacity: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class DepartmentUtilization(BaseModel):
    department_id: str
    department_name: str
    staff_count: int
    max_capacity: int
    utilization_percentage: int


class DepartmentStats(BaseModel):
    total_departments: int
    active_departments: int
    total_staff: int
    department_utilization: List[DepartmentUtilization]


class SubAdminCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    department_id: str
    sub_admin_type: Optional[str] = Field(None, max_length=50)
    permissions: Permissions = Field(default_factory=Permissions)


class PermissionsUpdate(BaseModel):
    user_id: str
    department_id: str
    permissions: Permissions


class SubAdminResponse(BaseModel):
    user: dict
    department_id: str
    department_name: Optional[str] = None
    permissions: Permissions


class MyPermissionsResponse(BaseModel):
    role: UserRole
    permissions: Permissions

# ==================== HELPER FUNCTIONS ====================

def get_department_or_404(db: Session, department_id: str) -> Department:
    department = db.query(Department).filter(Department.id == department_id).first()
    if not department:
        raise NotFound("Department not found")
    return department


def ensure_department_name_free(db: Session, name: str, exclude_id: Optional[str] = None):
    query = db.query(Department).filter(Department.name == name)
    if exclude_id:
        query = query.filter(Department.id != exclude_id)
    if query.first():
        raise Conflict(f"Department '{name}' already exists")


def ensure_doctor_exists(db: Session, doctor_id: Optional[str]):
    if doctor_id and not db.query(Doctor).filter(Doctor.id == doctor_id).first():
        raise NotFound("Head doctor not found")


def serialize_sub_admin(row: SubAdminPermission) -> dict:
    return {
        "user": serialize_user(row.user),
        "department_id": row.department_id,
        "department_name": row.department.name if row.department else None,
        "permissions": Permissions.from_row(row),
    }


def create_sub_admin(db: Session, data: SubAdminCreate) -> SubAdminPermission:
    """Sub-admin user plus its permission row for one department."""
    if db.query(User).filter(User.email == data.email).first():
        raise Conflict(f"User with email {data.email} already exists")
    department = get_department_or_404(db, data.department_id)

    user = User(
        email=data.email,
        password_hash=hash_password(data.password),
        first_name=data.first_name,
        last_name=data.last_name,
        phone=data.phone,
        role=UserRole.SUB_ADMIN.value,
        department=department.name,
        sub_admin_type=data.sub_admin_type,
        is_active=True
    )
    db.add(user)
    db.flush()

    row = SubAdminPermission(
        user_id=user.id,
        department_id=department.id,
        **data.permissions.model_dump()
    )
    db.add(row)
    db.flush()
    return row


def update_sub_admin_permissions(db: Session, data: PermissionsUpdate) -> SubAdminPermission:
    user = db.query(User).filter(User.id == data.user_id).first()
    if not user or user.role != UserRole.SUB_ADMIN.value:
        raise NotFound("Sub-admin not found")
    department = get_department_or_404(db, data.department_id)

    row = db.query(SubAdminPermission).filter(
        SubAdminPermission.user_id == user.id,
        SubAdminPermission.department_id == department.id
    ).first()
    if not row:
        row = SubAdminPermission(user_id=user.id, department_id=department.id)
        db.add(row)

    for key, value in data.permissions.model_dump().items():
        setattr(row, key, value)
    row.updated_at = datetime.now()
    user.department = department.name

    db.flush()
    return row


def get_department_stats(db: Session) -> dict:
    """Staff headcount against capacity for each active department."""
    departments = db.query(Department).order_by(Department.name).all()
    active = [d for d in departments if d.is_active]

    staff_counts = dict(
        db.query(SubAdminPermission.department_id, func.count(distinct(SubAdminPermission.user_id)))
        .join(User, User.id == SubAdminPermission.user_id)
        .filter(User.is_active == True)  # noqa: E712
        .group_by(SubAdminPermission.department_id).all()
    )

    utilization = []
    for department in active:
        staff = staff_counts.get(department.id, 0)
        capacity = department.max_staff_capacity
        utilization.append({
            "department_id": department.id,
            "department_name": department.name,
            "staff_count": staff,
            "max_capacity": capacity,
            # Rounded half up
            "utilization_percentage": (staff * 100 + capacity // 2) // capacity if capacity > 0 else 0,
        })

    return {
        "total_departments": len(departments),
        "active_departments": len(active),
        "total_staff": sum(row["staff_count"] for row in utilization),
        "department_utilization": utilization,
    }

# ==================== DEPARTMENTS ====================

@router.get("/departments", response_model=List[DepartmentResponse])
async def list_departments(
    active_only: bool = False,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    query = db.query(Department)
    if active_only:
        query = query.filter(Department.is_active == True)  # noqa: E712
    return query.order_by(Department.name).all()


@router.get("/departments/stats", response_model=DepartmentStats)
async def department_stats(
    auth: AuthContext = Depends(require_roles(UserRole.ADMIN, UserRole.SUB_ADMIN)),
    db: Session = Depends(get_db)
):
    """
    🏥 Headcount and capacity utilisation per active department
    """
    return get_department_stats(db)


@router.get("/departments/{department_id}", response_model=DepartmentResponse)
async def get_department(
    department_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    return get_department_or_404(db, department_id)


@router.post("/departments", response_model=DepartmentResponse, status_code=201)
async def create_department(
    request: DepartmentCreate,
    auth: AuthContext = Depends(admin_only),
    db: Session = Depends(get_db)
):
    ensure_department_name_free(db, request.name)
    ensure_doctor_exists(db, request.head_doctor_id)

    department = Department(**request.model_dump())
    db.add(department)
    db.flush()

    log_action(db, auth.user_id, "DEPARTMENT_CREATED", "department", department.id, {"name": department.name})
    db.commit()
    db.refresh(department)
    return department


@router.put("/departments/{department_id}", response_model=DepartmentResponse)
async def update_department(
    department_id: str,
    request: DepartmentUpdate,
    auth: AuthContext = Depends(admin_only),
    db: Session = Depends(get_db)
):
    department = get_department_or_404(db, department_id)
    updates = request.model_dump(exclude_unset=True)

    if updates.get("name"):
        ensure_department_name_free(db, updates["name"], exclude_id=department.id)
    if "head_doctor_id" in updates:
        ensure_doctor_exists(db, updates["head_doctor_id"])

    for key, value in updates.items():
        if value is not None or key == "head_doctor_id":
            setattr(department, key, value)
    department.updated_at = datetime.now()

    log_action(db, auth.user_id, "DEPARTMENT_UPDATED", "department", department.id, {"fields": sorted(updates.keys())})
    db.commit()
    db.refresh(department)
    return department


@router.delete("/departments/{department_id}", status_code=204)
async def delete_department(
    department_id: str,
    auth: AuthContext = Depends(admin_only),
    db: Session = Depends(get_db)
):
    department = get_department_or_404(db, department_id)
    in_use = db.query(SubAdminPermission).filter(SubAdminPermission.department_id == department.id).count()
    if in_use:
        raise Conflict("Department still has sub-admins assigned")

    db.delete(department)
    log_action(db, auth.user_id, "DEPARTMENT_DELETED", "department", department_id, {"name": department.name})
    db.commit()

# ==================== SUB-ADMINS ====================

@router.post("/sub-admins", response_model=SubAdminResponse, status_code=201)
async def create_sub_admin_endpoint(
    request: SubAdminCreate,
    auth: AuthContext = Depends(admin_only),
    db: Session = Depends(get_db)
):
    """
    👥 Create a department sub-admin with named capabilities
    """
    row = create_sub_admin(db, request)
    log_action(db, auth.user_id, "SUB_ADMIN_CREATED", "user", row.user_id, {
        "department_id": row.department_id,
        "granted": sorted(cap.value for cap in request.permissions.granted())
    })
    db.commit()
    db.refresh(row)

    logger.info(f"Sub-admin {row.user_id} created for department {row.department_id}")
    return serialize_sub_admin(row)


@router.get("/sub-admins", response_model=List[SubAdminResponse])
async def list_sub_admins(
    department_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(admin_only),
    db: Session = Depends(get_db)
):
    query = db.query(SubAdminPermission).options(
        joinedload(SubAdminPermission.user),
        joinedload(SubAdminPermission.department)
    )
    if department_id:
        query = query.filter(SubAdminPermission.department_id == department_id)

    rows = query.order_by(SubAdminPermission.created_at.desc()).offset(offset).limit(limit).all()
    return [serialize_sub_admin(row) for row in rows]


@router.put("/sub-admin-permissions", response_model=SubAdminResponse)
async def update_permissions(
    request: PermissionsUpdate,
    auth: AuthContext = Depends(admin_only),
    db: Session = Depends(get_db)
):
    row = update_sub_admin_permissions(db, request)
    log_action(db, auth.user_id, "SUB_ADMIN_PERMISSIONS_UPDATED", "user", row.user_id, {
        "department_id": row.department_id,
        "granted": sorted(cap.value for cap in request.permissions.granted())
    })
    db.commit()
    db.refresh(row)
    return serialize_sub_admin(row)


@router.get("/my-permissions", response_model=MyPermissionsResponse)
async def my_permissions(auth: AuthContext = Depends(get_auth_context)):
    if auth.is_admin:
        return {"role": auth.role, "permissions": Permissions.all_granted()}
    if auth.role != UserRole.SUB_ADMIN:
        raise PermissionDenied("Only administrators have permissions")

    permissions = Permissions(**{cap.value: True for cap in auth.capabilities})
    return {"role": auth.role, "permissions": permissions}
