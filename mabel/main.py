import os
import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException, RequestValidationError
from fastapi.exception_handlers import http_exception_handler as fastapi_http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_users.password import PasswordHelper
from sqlalchemy import select

from .background import drain
from .database import init_db, async_session_maker
from .errors import MabelError
from .routers import chapters, events, jobs, modules, projects
from .schemas import UserCreate, UserRead, UserUpdate
from .services import workers  # noqa: F401  (registers the task-queue handlers)
from .users import fastapi_users, auth_backend

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Mabel")

# Enable CORS if needed
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ----------------------
# Route Includes
# ----------------------
app.include_router(projects.router)
app.include_router(modules.router)
app.include_router(chapters.router)
app.include_router(jobs.router)
app.include_router(events.router)

# Authentication Routes
app.include_router(
    fastapi_users.get_auth_router(auth_backend),
    prefix="/auth/jwt",
    tags=["auth"]
)
app.include_router(
    fastapi_users.get_register_router(UserRead, UserCreate),
    prefix="/auth",
    tags=["auth"]
)
app.include_router(
    fastapi_users.get_users_router(UserRead, UserUpdate),
    prefix="/users",
    tags=["users"]
)


# -----------------------------------------------------
# JSON error envelope for API routes: {"error": "..."}
# -----------------------------------------------------
def _is_api(request: Request) -> bool:
    return (request.url.path or "/").startswith("/api")


@app.exception_handler(MabelError)
async def _mabel_error_handler(request: Request, exc: MabelError):
    body = {"error": exc.message}
    if exc.error_type:
        body["type"] = exc.error_type
    return JSONResponse(body, status_code=exc.status_code)


@app.exception_handler(FastAPIHTTPException)
async def _http_error_handler(request: Request, exc: FastAPIHTTPException):
    if _is_api(request):
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return JSONResponse({"error": detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))
    return await fastapi_http_exception_handler(request, exc)


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    return JSONResponse({"error": message}, status_code=400)


# ----------------------
# Auto-create admin user
# ----------------------
async def create_admin_user():
    from .models import User
    admin_email = os.getenv("ADMIN_EMAIL")
    admin_password = os.getenv("ADMIN_PASSWORD")
    admin_username = os.getenv("ADMIN_USERNAME", "admin")

    if not admin_email or not admin_password:
        logger.info("ADMIN_EMAIL or ADMIN_PASSWORD not set, skipping admin creation.")
        return

    async with async_session_maker() as session:
        result = await session.execute(select(User).where(User.email == admin_email))
        if result.scalars().first():
            logger.info("Admin user already exists: %s", admin_email)
            return
        session.add(User(
            email=admin_email,
            hashed_password=PasswordHelper().hash(admin_password),
            username=admin_username,
            is_superuser=True,
            is_active=True,
            is_verified=True,
        ))
        await session.commit()
        logger.info("Admin user created: %s", admin_email)


@app.on_event("startup")
async def on_startup():
    from . import models  # noqa: F401  (Required for SQLAlchemy model detection)
    await init_db()
    await create_admin_user()


@app.on_event("shutdown")
async def on_shutdown():
    # let in-flight background work settle its jobs before the loop closes
    await drain(timeout=30)


@app.get("/healthz")
async def healthz():
    return {"ok": True}
