# FastAPI entrypoint: auth + RBAC routes and middleware

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute
from loguru import logger
import os
import dotenv

from auth.auth_routes import router as auth_router
from rbac.rbac_routes import router as rbac_router

dotenv.load_dotenv()

# Initialize FastAPI app
app = FastAPI(
    title="University Records RBAC API",
    description="Roles, permissions, assignments and effective-permission resolution",
    version="1.0.0"
)

# ==================== CORS MIDDLEWARE ====================

FRONTEND_DOMAINS = [
    origin.strip()
    for origin in os.getenv("FRONTEND_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=FRONTEND_DOMAINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "Accept",
    ],
    max_age=86400,
)

# ==================== SECURITY HEADERS MIDDLEWARE ====================

@app.middleware("http")
async def set_security_headers(request: Request, call_next):
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "SAMEORIGIN"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    # Permission snapshots must not be cached by intermediaries
    response.headers["Cache-Control"] = "no-store"

    return response

# ==================== ROUTER REGISTRATION ====================

app.include_router(auth_router)         # /auth
app.include_router(rbac_router)         # /api/rbac

# ==================== ROOT ENDPOINTS ====================

@app.get("/")
async def root():
    """Root endpoint - API information and routes."""
    routes = [
        {
            "path": route.path,
            "name": route.name,
            "methods": sorted(route.methods - {"HEAD", "OPTIONS"})
        }
        for route in app.routes
        if isinstance(route, APIRoute)
    ]
    return {"message": "University Records RBAC API", "version": app.version, "routes": routes}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}

# ==================== STARTUP EVENTS ====================

@app.on_event("startup")
async def startup_event():
    """Create missing tables and load the seed permissions and system roles."""
    from auth.models import init_database
    from rbac.config import rbac_config

    logger.info(f"[SEED] Preparing RBAC tables from {rbac_config.seed_file}")
    try:
        init_database(str(rbac_config.seed_file))
    except Exception as e:
        logger.error(f"[SEED] RBAC database setup failed: {e}")
        raise
    logger.info("[SEED] RBAC database ready")
