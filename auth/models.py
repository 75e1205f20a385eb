"""
SQLAlchemy models for user accounts and the security audit trail.

The RBAC tables (permissions, roles, user_role_assignments) live in rbac/models.py
and share this declarative Base.
"""

from sqlalchemy import CheckConstraint, ForeignKey, create_engine, Column, String, Boolean, DateTime, Text, inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from sqlalchemy.pool import StaticPool
from typing import Generator, Optional
from loguru import logger
import os
import uuid
import dotenv

from rbac.utils import utcnow

dotenv.load_dotenv()

Base = declarative_base()

# Global engine instance (singleton)
_engine = None
_SessionLocal = None

ACCOUNT_ROLES = ("student", "staff", "admin")


class User(Base):
    """University accounts (students, staff, administrators)"""
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    full_name = Column(String(255))

    # Coarse account role, only used for the fallback permission set
    account_role = Column(String(20), nullable=False, default="student")
    department = Column(String(100), nullable=True, index=True)

    # Status
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    last_login = Column(DateTime, nullable=True)

    role_assignments = relationship(
        "UserRoleAssignment",
        back_populates="user",
        foreign_keys="UserRoleAssignment.user_id",
    )

    __table_args__ = (
        CheckConstraint("account_role IN ('student', 'staff', 'admin')", name="ck_users_account_role"),
    )

    def __repr__(self):
        return f"<User(user_id={self.user_id}, email='{self.email}', account_role='{self.account_role}')>"


class AuditLog(Base):
    """Security audit log for auth and RBAC events"""

    __tablename__ = "audit_logs"

    audit_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.user_id"), nullable=True, index=True)
    event_type = Column(String(50), nullable=False)  # user_login, role_assigned, access_denied, etc.
    event_details = Column(Text)  # JSON string
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    status = Column(String(20), default="success")  # success, failure
    created_at = Column(DateTime, default=utcnow, index=True)


def get_engine():
    """Get SQLAlchemy engine for DATABASE_URL"""
    global _engine

    if _engine is not None:
        return _engine

    database_url = os.getenv("DATABASE_URL", "sqlite:///./unirecords.db")
    echo = os.getenv("DB_ECHO", "False").lower() == "true"

    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url:
            _engine = create_engine(database_url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
        else:
            _engine = create_engine(database_url, echo=echo, connect_args=connect_args)
    else:
        _engine = create_engine(database_url, echo=echo, pool_size=10, max_overflow=20, pool_pre_ping=True)

    logger.info(f"Database engine created for {_engine.url.render_as_string(hide_password=True)}")
    return _engine


def configure_engine(engine) -> None:
    """Swap the global engine (migrations, tests)"""
    global _engine, _SessionLocal
    _engine = engine
    _SessionLocal = None


def get_db_session():
    """Get database session"""
    global _SessionLocal

    if _SessionLocal is None:
        engine = get_engine()
        _SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    return _SessionLocal()


def get_db() -> Generator:
    """
    FastAPI dependency for database sessions.

    Usage:
        @router.get("/api/rbac/roles")
        def list_roles(db: Session = Depends(get_db)):
            ...
    """
    session = get_db_session()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database error: {e}")
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_database(seed_file: Optional[str] = None):
    """
    Initialize database schema safely (IDEMPOTENT).
    Creates tables in correct dependency order, then seeds permissions and system roles.
    """
    # Registers the RBAC tables on Base.metadata
    import rbac.models  # noqa: F401
    from rbac.seed import seed_rbac

    try:
        engine = get_engine()
        inspector = inspect(engine)
        existing_tables = set(inspector.get_table_names())

        # Define table creation order (dependencies first)
        table_creation_order = [
            "users",                  # No dependencies
            "permissions",            # No dependencies
            "roles",                  # No dependencies
            "user_role_assignments",  # Depends on users, roles
            "audit_logs",             # Depends on users (optional)
        ]

        for table_name in table_creation_order:
            if table_name in Base.metadata.tables:
                table = Base.metadata.tables[table_name]

                if table_name not in existing_tables:
                    logger.info(f"Creating table: {table_name}")
                    table.create(engine, checkfirst=True)
                    existing_tables.add(table_name)
                else:
                    logger.debug(f"Table already exists: {table_name}")

        session = get_db_session()
        try:
            seed_rbac(session, seed_file)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.info("✓ Database initialization completed successfully")

    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}")
        raise
