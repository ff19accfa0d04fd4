import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, List

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..models.models import Employee, ACTIVE_EMPLOYEE_STATUSES
from ..schemas.attendance import AttendanceErrorCode


http_bearer = HTTPBearer(auto_error=False)


@dataclass
class CurrentUser:
    """Identity carried by the bearer token, issued by the platform's auth service"""
    user_id: int
    company_id: int
    roles: List[str] = field(default_factory=list)


def _create_token(sub: str, ttl_seconds: int, extra: Optional[dict] = None) -> str:
    now = datetime.now(tz=timezone.utc)
    payload = {
        "sub": sub,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
        "jti": str(uuid.uuid4()),
    }
    if extra:
        payload.update(extra)
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token


def create_access_token(user_id: int, company_id: int, roles: Optional[List[str]] = None) -> str:
    return _create_token(
        str(user_id),
        settings.jwt_ttl_seconds,
        extra={"company_id": company_id, "roles": roles or []},
    )


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> CurrentUser:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    try:
        user_id = int(payload.get("sub"))
        company_id = int(payload.get("company_id"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    return CurrentUser(user_id=user_id, company_id=company_id, roles=list(payload.get("roles") or []))


def _unauthorized_employee(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "success": False,
            "code": AttendanceErrorCode.unauthorized_employee.value,
            "message": message,
        },
    )


def get_current_employee(
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Employee:
    """Resolve the caller to an active employee of the token's company."""
    employee = db.query(Employee).filter(
        Employee.user_id == user.user_id,
        Employee.company_id == user.company_id,
    ).first()
    if employee is None:
        raise _unauthorized_employee("Employee not found for this company")
    if employee.status not in ACTIVE_EMPLOYEE_STATUSES:
        raise _unauthorized_employee("Employee is not active")
    return employee


def require_any_role(*allowed_roles: str):
    """Caller needs at least one of the roles, from the token or the employee record."""
    allowed = {r.lower() for r in allowed_roles}

    def _dep(
        user: CurrentUser = Depends(get_current_user),
        employee: Employee = Depends(get_current_employee),
    ) -> Employee:
        role_names = {r.lower() for r in user.roles}
        if employee.role:
            role_names.add(employee.role.lower())
        if not role_names & allowed:
            raise HTTPException(status_code=403, detail="Forbidden")
        return employee

    return _dep
