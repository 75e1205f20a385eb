"""
Account endpoints for the records portal: provisioning, sign-in, sign-out.

Registration is an administrative action (users:create); there is no
self-service sign-up.
"""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, EmailStr, Field
from loguru import logger

from auth.auth_manager import MIN_PASSWORD_LENGTH, auth_manager
from auth.rbac_dependencies import (
    get_bearer_token, get_client_ip, require_permission, verify_jwt_token
)

router = APIRouter(prefix="/auth", tags=["auth"])

LOGIN_RESPONSE_FIELDS = ("access_token", "token_type", "expires_in", "user_id", "email", "account_role")

# ==================== REQUEST MODELS ====================

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=MIN_PASSWORD_LENGTH)
    full_name: str = Field(..., min_length=1, max_length=255)
    account_role: Literal["student", "staff", "admin"] = "student"
    department: Optional[str] = Field(None, max_length=100)


class LoginRequest(BaseModel):
    email: str
    password: str

# ==================== REGISTRATION ====================

@router.post("/register")
async def register(
    data: RegisterRequest,
    request: Request,
    user: dict = Depends(require_permission("users:create"))
):
    """
    Provision an account and its matching system role.

    Example request:
        {"email": "ada@university.edu", "password": "...", "full_name": "Ada", "department": "CS"}
    """
    ip_address = get_client_ip(request)
    try:
        result = auth_manager.register(
            email=data.email,
            password=data.password,
            full_name=data.full_name,
            account_role=data.account_role,
            department=data.department,
            actor_id=user["sub"]
        )

        if "error" in result:
            auth_manager.log_audit_event(
                user["sub"], "registration_failed",
                {"email": data.email, "reason": result["error"]},
                status="failure", ip_address=ip_address
            )
            raise HTTPException(status_code=400, detail=result["error"])

        auth_manager.log_audit_event(
            user["sub"], "user_registered",
            {"email": data.email, "user_id": result["user_id"], "account_role": data.account_role},
            ip_address=ip_address
        )
        logger.info(f"[REGISTER] {user['sub']} provisioned {data.email}")

        return {
            "success": True,
            "user_id": result["user_id"],
            "email": data.email,
            "account_role": result["account_role"]
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"[REGISTER] Unexpected failure: {e}")
        raise HTTPException(status_code=500, detail="Registration failed")

# ==================== SESSION ====================

@router.post("/login")
async def login(data: LoginRequest, request: Request):
    """Exchange credentials for a bearer token; the portal then loads /api/rbac/users/{id}/permissions"""
    try:
        result = auth_manager.login(
            email=data.email,
            password=data.password,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent", "unknown")
        )
    except Exception as e:
        logger.error(f"[LOGIN] Unexpected failure: {e}")
        raise HTTPException(status_code=500, detail="Login failed")

    if "error" in result:
        raise HTTPException(status_code=401, detail=result["error"])
    return {"success": True, **{field: result[field] for field in LOGIN_RESPONSE_FIELDS}}


@router.post("/logout")
async def logout(token: str = Depends(get_bearer_token), user: dict = Depends(verify_jwt_token)):
    """Revoke the bearer token and drop the server-side permission snapshot"""
    auth_manager.logout(token, user["sub"])
    return {"success": True, "message": "Logged out"}


@router.get("/me")
async def me(user: dict = Depends(verify_jwt_token)):
    """Current account"""
    account = auth_manager.get_user(user["sub"])
    if not account:
        raise HTTPException(status_code=404, detail="User not found")
    return account
