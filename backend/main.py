from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import os

from database import engine, Base
import models  # noqa: F401  (registers tables on Base.metadata)
import storage
from rate_limit import RateLimitingMiddleware
from errors import AppError, InternalError, InvalidInput
from auth.routes import router as auth_router
from routes.milestones import router as milestones_router
from routes.tasks import router as tasks_router
from routes.teams import router as teams_router
from routes.time_logs import router as time_logs_router
from routes.users import router as users_router

# Configure logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",     # Production frontend
    "http://127.0.0.1:3000",     # Production frontend (IP)
    "http://localhost:3001",     # Development frontend
    "http://127.0.0.1:3001"      # Development frontend (IP)
]

app = FastAPI(
    title="TaskFlow API",
    description="Team task management with milestones, time tracking and team chat",
    version="1.0.0"
)


def cors_origins() -> list:
    configured = os.environ.get("CORS_ORIGINS", "")
    origins = [origin.strip() for origin in configured.split(",") if origin.strip()]
    return origins or DEFAULT_CORS_ORIGINS


# Auth rate limiting, wrapped by CORS
app.add_middleware(RateLimitingMiddleware)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(teams_router)
app.include_router(tasks_router)
app.include_router(time_logs_router)
app.include_router(milestones_router)


# ============== Error Handlers ==============

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    logger.debug(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    message = details[0]["msg"] if details else InvalidInput.default_message
    logger.info(f"Invalid input for {request.method} {request.url.path}: {message}")
    return JSONResponse(
        status_code=InvalidInput.status_code,
        content={"error": message, "details": details},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Unhandled database error on {request.method} {request.url.path}: {exc}")
    error = InternalError()
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=error.to_dict())


# ============== Startup ==============

@app.on_event("startup")
def create_tables():
    """Create missing tables; existing tables are left untouched."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")


# ============== File Upload Configuration ==============

# Ensure upload directory exists (skip when it can't be created)
try:
    storage.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    # Mount static files for serving uploads
    app.mount("/uploads", StaticFiles(directory=str(storage.UPLOAD_DIR)), name="uploads")
except (OSError, PermissionError) as e:
    logger.warning(f"Could not create upload directory: {e}. File uploads will not work.")


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8000")),
        reload=os.environ.get("ENVIRONMENT", "development") == "development",
    )
