"""
User and department administration (JSON).
"""
from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash

from app.dcms.audit import record_event
from app.dcms.auth import user_to_dict
from app.dcms.db import db_session
from app.dcms.errors import ConflictError, ValidationError
from app.dcms.models import Department, User, UserRole
from app.dcms.rbac import DEPARTMENTS_MANAGE, DOCS_VIEW, USERS_MANAGE, USERS_VIEW, require_permission

bp = Blueprint("admin", __name__)


def _payload() -> dict:
    return request.get_json(silent=True) or request.form.to_dict()


def _as_bool(raw) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw or "").strip().lower() in ("1", "true", "yes", "on")


def department_to_dict(d: Department) -> dict:
    return {"id": d.id, "name": d.name, "description": d.description}


@bp.get("/users")
@require_permission(USERS_VIEW)
def list_users():
    s = db_session()
    raw_role = (request.args.get("role") or "").strip()
    if not raw_role:
        raise ValidationError("role", "query parameter is required")
    try:
        role = UserRole.parse(raw_role)
    except ValueError:
        raise ValidationError("role", f"must be one of: {', '.join(r.value for r in UserRole)}") from None
    users = s.query(User).filter(User.role == role, User.is_active.is_(True)).order_by(User.full_name.asc()).all()
    return jsonify([user_to_dict(u) for u in users])


@bp.post("/users")
@require_permission(USERS_MANAGE)
def create_user():
    s = db_session()
    data = _payload()

    username = (data.get("username") or "").strip().lower()
    full_name = (data.get("full_name") or "").strip()
    password = data.get("password") or ""
    if not username:
        raise ValidationError("username", "is required")
    if not full_name:
        raise ValidationError("full_name", "is required")
    if len(password) < 8:
        raise ValidationError("password", "must be at least 8 characters")
    try:
        role = UserRole.parse(data.get("role") or UserRole.RECIPIENT.value)
    except ValueError:
        raise ValidationError("role", f"must be one of: {', '.join(r.value for r in UserRole)}") from None

    department_id = data.get("department_id")
    if department_id not in (None, ""):
        try:
            department_id = int(department_id)
        except (TypeError, ValueError):
            raise ValidationError("department_id", "must be an integer") from None
        if s.get(Department, department_id) is None:
            raise ValidationError("department_id", "must reference an existing department")
    else:
        department_id = None

    u = User(
        username=username,
        full_name=full_name,
        password_hash=generate_password_hash(password),
        role=role,
        master_copy_access=_as_bool(data.get("master_copy_access")),
        department_id=department_id,
        is_active=True,
    )
    s.add(u)
    try:
        s.flush()
    except IntegrityError:
        s.rollback()
        raise ConflictError("User", username, message="Username already exists.") from None

    record_event(
        s,
        actor=g.current_user,
        action="user.create",
        entity_type="User",
        entity_id=str(u.id),
        metadata={"username": u.username, "role": u.role.value, "master_copy_access": u.master_copy_access},
    )
    s.commit()
    current_app.logger.info("User %s created with role %s", u.id, u.role.value)
    return jsonify(user_to_dict(u)), 201


@bp.get("/departments")
@require_permission(DOCS_VIEW)
def list_departments():
    s = db_session()
    return jsonify([department_to_dict(d) for d in s.query(Department).order_by(Department.name.asc()).all()])


@bp.post("/departments")
@require_permission(DEPARTMENTS_MANAGE)
def create_department():
    s = db_session()
    data = _payload()
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name", "is required")
    d = Department(name=name, description=(data.get("description") or "").strip() or None)
    s.add(d)
    try:
        s.flush()
    except IntegrityError:
        s.rollback()
        raise ConflictError("Department", name, message="Department already exists.") from None
    record_event(s, actor=g.current_user, action="department.create", entity_type="Department", entity_id=str(d.id))
    s.commit()
    return jsonify(department_to_dict(d)), 201
