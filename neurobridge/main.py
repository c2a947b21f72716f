import os, logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi_users import exceptions as fu_exceptions
from sqlalchemy import select

from .background import drain
from .database import init_db, async_session_maker
from .errors import InvariantError, ServiceError
from .models import User
from .routers import auth, chat, events, jobs, materials
from .schemas import UserCreate
from .services.scheduler import start_scheduler, stop_scheduler
from .settings.config import settings
from .users import user_manager_for

app = FastAPI(title="NeuroBridge")

if settings.STORAGE_BACKEND == "local":
    os.makedirs(settings.STORAGE_LOCAL_ROOT, exist_ok=True)
    app.mount(settings.STORAGE_PUBLIC_BASE_URL, StaticFiles(directory=settings.STORAGE_LOCAL_ROOT), name="uploads")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Update for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Route Includes
# ----------------------
app.include_router(auth.router, tags=["auth"])
app.include_router(materials.router, tags=["materials"])
app.include_router(chat.router, tags=["chat"])
app.include_router(jobs.router, tags=["jobs"])
app.include_router(events.router, tags=["events"])

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


# -----------------------------------------------------
# Service errors -> {"error": code, "message": ...}
# Causes are logged, never returned.
# -----------------------------------------------------
@app.exception_handler(ServiceError)
async def _service_error_handler(request: Request, exc: ServiceError):
    if exc.cause:
        logger.info("%s %s -> %s (%s)", request.method, request.url.path, exc.code, exc.cause)
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "message": exc.message})


@app.exception_handler(InvariantError)
async def _invariant_error_handler(request: Request, exc: InvariantError):
    logger.error("Invariant violated on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "internal_error", "message": "internal error"})


# ----------------------
# Auto-create admin user
# ----------------------
async def create_admin_user():
    admin_email = os.getenv("ADMIN_EMAIL")
    admin_password = os.getenv("ADMIN_PASSWORD")

    if not admin_email or not admin_password:
        logger.info("ADMIN_EMAIL or ADMIN_PASSWORD not set, skipping admin creation.")
        return

    async with async_session_maker() as session:
        existing = (await session.execute(select(User).where(User.email == admin_email))).scalars().first()
        if existing:
            logger.info("Admin user already exists: %s", admin_email)
            return
        try:
            await user_manager_for(session).create(
                UserCreate(email=admin_email, password=admin_password, is_superuser=True, is_verified=True),
                safe=False,
            )
        except fu_exceptions.InvalidPasswordException as e:
            logger.error("Admin user not created, password rejected: %s", e.reason)
            return
        logger.info("Admin user created: %s", admin_email)


@app.on_event("startup")
async def on_startup():
    await init_db()
    await create_admin_user()
    start_scheduler()


@app.on_event("shutdown")
async def on_shutdown():
    stop_scheduler()
    await drain()


@app.get("/healthcheck")
async def healthcheck():
    return {"ok": True}
