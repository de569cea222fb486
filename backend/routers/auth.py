import time
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.dependencies import get_current_user, get_engine
from backend.security import issue_session_token
from backend.services.engine import (
    AttendanceEngine,
    DuplicateUserError,
    RoleConflictError,
    UserNotFoundError,
)
from backend.services.identity import User, resolve_attendance_key

router = APIRouter()


class RegisterRequest(BaseModel):
    name: str
    email: str
    role: Literal["student", "lecturer"] = "student"
    student_id: str | None = None


class LoginRequest(BaseModel):
    identifier: str
    role: Literal["student", "lecturer"] | None = None


def _user_payload(user: User) -> dict:
    return {
        "id": user["id"],
        "name": user["name"],
        "email": user["email"],
        "role": user["role"],
        "student_id": user["student_id"],
        "attendance_key": resolve_attendance_key(user),
    }


def _issue_token(user: User) -> dict:
    token, claims = issue_session_token(user["id"], role=user["role"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": _user_payload(user),
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.post("/auth/register")
def register(payload: RegisterRequest, engine: AttendanceEngine = Depends(get_engine)):
    try:
        user = engine.register_user(
            name=payload.name,
            email=payload.email,
            role=payload.role,
            student_id=payload.student_id,
        )
    except DuplicateUserError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _issue_token(user)


@router.post("/auth/login")
def login(payload: LoginRequest, engine: AttendanceEngine = Depends(get_engine)):
    identifier = payload.identifier.strip()
    if not identifier:
        raise HTTPException(status_code=400, detail="Email or student ID is required.")

    try:
        user = engine.login(identifier, payload.role)
    except UserNotFoundError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except RoleConflictError as e:
        raise HTTPException(status_code=403, detail=str(e))
    return _issue_token(user)


@router.get("/auth/me")
def auth_me(user: User = Depends(get_current_user)):
    return _user_payload(user)
