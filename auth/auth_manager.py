"""
Authentication manager: bcrypt password hashing, JWT issue/verify, audit events.

Accounts carry a coarse ``account_role`` (student/staff/admin). Fine-grained
authorization always goes through the RBAC resolver; the account role only
picks the provisioning role at registration and the fallback permission set.
"""

import jwt
import os
import json
import bcrypt
from datetime import datetime, timedelta, timezone
from typing import Optional

from loguru import logger

from auth.models import ACCOUNT_ROLES, AuditLog, User, get_db_session
from auth.cache_manager import cache_manager
from rbac.errors import RBACError
from rbac.repository import RoleRepository
from rbac.schemas import AssignRoleRequest
from rbac.service import AssignmentService
from rbac.utils import utcnow

MIN_PASSWORD_LENGTH = 8
# bcrypt ignores everything past 72 bytes
BCRYPT_MAX_BYTES = 72


class AuthManager:
    """Accounts, credentials and access tokens for the records portal"""

    def __init__(self):
        self.jwt_secret = os.getenv("JWT_SECRET")
        if not self.jwt_secret:
            raise ValueError("JWT_SECRET is not set; refusing to issue or verify access tokens.")
        if len(self.jwt_secret) < 32:
            logger.warning("[AUTH] JWT_SECRET is shorter than 32 characters")
        self.jwt_expiry = int(os.getenv("JWT_EXPIRY_SECONDS", "3600"))
        self.bcrypt_rounds = int(os.getenv("BCRYPT_ROUNDS", "12"))
        logger.info(f"[AUTH] Ready (token lifetime {self.jwt_expiry}s)")

    # ==================== PASSWORD HASHING ====================

    @staticmethod
    def _password_bytes(password: str) -> bytes:
        return password.encode("utf-8")[:BCRYPT_MAX_BYTES]

    def _hash_password(self, password: str) -> str:
        hashed = bcrypt.hashpw(self._password_bytes(password), bcrypt.gensalt(rounds=self.bcrypt_rounds))
        return hashed.decode("utf-8")

    def _verify_password(self, password: str, password_hash) -> bool:
        """False for a wrong password and for a missing or corrupt stored hash"""
        if not password_hash:
            logger.error("[VERIFY] Account has no stored password hash")
            return False
        if isinstance(password_hash, str):
            password_hash = password_hash.encode("utf-8")
        try:
            return bcrypt.checkpw(self._password_bytes(password), password_hash)
        except ValueError as e:
            logger.error(f"[VERIFY] Stored password hash is malformed: {e}")
            return False

    # ==================== REGISTRATION ====================

    @staticmethod
    def _registration_problem(session, email: str, password: str, account_role: str) -> Optional[str]:
        if account_role not in ACCOUNT_ROLES:
            return "Invalid account role"
        if session.query(User).filter_by(email=email).first() is not None:
            return "Email already registered"
        if len(password) < MIN_PASSWORD_LENGTH:
            return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        return None

    def register(
        self,
        email: str,
        password: str,
        full_name: str,
        account_role: str = "student",
        department: Optional[str] = None,
        actor_id: Optional[str] = None
    ) -> dict:
        """
        Create an account and provision the system role named after its account role.

        Returns ``{"success", "user_id", "account_role"}`` or ``{"error": ...}``.
        """
        session = get_db_session()
        try:
            problem = self._registration_problem(session, email, password, account_role)
            if problem:
                logger.warning(f"[REGISTER] Rejected {email}: {problem}")
                return {"error": problem}

            user = User(
                email=email,
                password_hash=self._hash_password(password),
                full_name=full_name,
                account_role=account_role,
                department=department,
                is_active=True,
                created_at=utcnow()
            )
            session.add(user)
            session.flush()

            role = RoleRepository.get_by_name(session, account_role)
            if role is None:
                logger.warning(f"[REGISTER] Role '{account_role}' is not seeded; {email} starts with no roles")
            else:
                request = AssignRoleRequest(user_id=user.user_id, role_id=role.id, department=department)
                AssignmentService.assign(session, request, actor_id=actor_id, commit=False)

            session.commit()
            logger.info(f"[REGISTER] {email} registered as {account_role}")
            return {"success": True, "user_id": user.user_id, "account_role": account_role}

        except RBACError as e:
            session.rollback()
            logger.error(f"[REGISTER] Could not provision role for {email}: {e.message}")
            return {"error": e.message}
        except Exception as e:
            session.rollback()
            logger.error(f"[REGISTER] {email}: {type(e).__name__}: {e}")
            return {"error": str(e)}
        finally:
            session.close()

    # ==================== LOGIN ====================

    def _issue_token(self, user: User) -> str:
        claims = {
            "sub": user.user_id,
            "email": user.email,
            "account_role": user.account_role,
            "exp": datetime.now(timezone.utc) + timedelta(seconds=self.jwt_expiry),
        }
        return jwt.encode(claims, self.jwt_secret, algorithm="HS256")

    def login(self, email: str, password: str, ip_address: str = None, user_agent: str = None) -> dict:
        """Check credentials and issue an access token, or return ``{"error": ...}``"""
        session = get_db_session()
        try:
            user = session.query(User).filter_by(email=email).first()
            if user is None:
                logger.warning(f"[LOGIN] Unknown account {email}")
                return {"error": "Invalid email or password"}

            if not self._verify_password(password, user.password_hash):
                logger.warning(f"[LOGIN] Wrong password for {email}")
                self.log_audit_event(user.user_id, "user_login", {"email": email},
                                     status="failure", ip_address=ip_address, user_agent=user_agent)
                return {"error": "Invalid email or password"}

            if not user.is_active:
                logger.warning(f"[LOGIN] Disabled account {email}")
                return {"error": "Account is disabled"}

            user.last_login = utcnow()
            session.commit()
            token = self._issue_token(user)

            self.log_audit_event(user.user_id, "user_login", {"email": email},
                                 ip_address=ip_address, user_agent=user_agent)
            logger.info(f"[LOGIN] {email} signed in")

            return {
                "success": True,
                "access_token": token,
                "token_type": "bearer",
                "user_id": user.user_id,
                "email": user.email,
                "account_role": user.account_role,
                "expires_in": self.jwt_expiry
            }

        except Exception as e:
            logger.error(f"[LOGIN] {email}: {type(e).__name__}: {e}")
            return {"error": str(e)}
        finally:
            session.close()

    def logout(self, token: str, user_id: str) -> dict:
        """Blacklist the access token and drop the user's cached permissions"""
        cache_manager.blacklist_token(token, ttl=self.jwt_expiry)
        cache_manager.invalidate_user_cache(user_id)
        self.log_audit_event(user_id, "user_logout")
        logger.info(f"[LOGOUT] User logged out: {user_id}")
        return {"success": True}

    # ==================== TOKENS ====================

    def verify_token(self, token: str) -> Optional[dict]:
        """Decoded claims, or None for an expired or tampered token"""
        try:
            claims = jwt.decode(token, self.jwt_secret, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            logger.warning("[TOKEN_VERIFY] Token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"[TOKEN_VERIFY] Rejected token: {e}")
            return None
        logger.debug(f"[TOKEN_VERIFY] Token accepted for {claims.get('sub')}")
        return claims

    def get_user(self, user_id: str) -> Optional[dict]:
        """Public account fields for /auth/me"""
        session = get_db_session()
        try:
            account = session.get(User, user_id)
            if account is None:
                return None
            return {
                field: getattr(account, field)
                for field in ("user_id", "email", "full_name", "account_role", "department", "is_active", "last_login")
            }
        finally:
            session.close()

    # ==================== AUDIT LOGGING ====================

    def log_audit_event(self, user_id: str, event_type: str, event_details: dict = None,
                        status: str = "success", ip_address: str = None, user_agent: str = None):
        """Write one audit row in its own session; failures are logged, never raised"""
        session = get_db_session()
        try:
            session.add(AuditLog(
                user_id=user_id,
                event_type=event_type,
                event_details=json.dumps(event_details or {}, default=str),
                ip_address=ip_address,
                user_agent=user_agent,
                status=status
            ))
            session.commit()
            logger.info(f"[AUDIT] {event_type} ({status}) user={user_id}")
        except Exception as e:
            session.rollback()
            logger.error(f"[AUDIT] Could not write {event_type}: {type(e).__name__}: {e}")
        finally:
            session.close()


# Global instance
auth_manager = AuthManager()
