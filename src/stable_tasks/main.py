import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .errors import (
    AlreadyCompleted,
    AuthenticationFailed,
    NotFound,
    StorageFault,
    TaskError,
    ValidationFailed,
)
from .logging_setup import setup_logging
from .routers import tasks as tasks_router
from .settings import get_settings

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {
        "name": "tasks",
        "description": "Create, read, update, complete and delete owner-scoped task records.",
    },
]

_settings = get_settings()
setup_logging(_settings.log_level)

app = FastAPI(
    title="Stable Task Store",
    description="Persistent task record store on paged durable memory.",
    version="0.1.0",
    openapi_tags=openapi_tags,
)

# Configure CORS based on settings (.env -> CORS_ALLOW_ORIGINS), with '*' fallback
allow_all = (_settings.cors_allow_origins == ["*"]) or (len(_settings.cors_allow_origins) == 0)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all else _settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_BY_ERROR = {
    NotFound: 404,
    ValidationFailed: 422,
    AuthenticationFailed: 403,
    AlreadyCompleted: 409,
}


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Return a consistent JSON structure for request validation errors.

    Response format:
        {
            "error": "ValidationError",
            "detail": [... pydantic/fastapi error details ...],
            "message": "Request validation failed"
        }
    """
    return JSONResponse(
        status_code=422,
        content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "detail": exc.errors(),
        },
    )


@app.exception_handler(TaskError)
async def task_error_handler(request: Request, exc: TaskError) -> JSONResponse:
    """
    Map expected task outcomes to HTTP statuses.

    Response format:
        {"error": "<kind>", "message": "<text>", "detail": [...] | null}
    """
    return JSONResponse(
        status_code=_STATUS_BY_ERROR.get(type(exc), 400),
        content={"error": exc.kind, "message": exc.msg, "detail": exc.detail},
    )


@app.exception_handler(StorageFault)
async def storage_fault_handler(request: Request, exc: StorageFault) -> JSONResponse:
    """Storage faults abort the request; nothing was persisted for it."""
    logger.error("Storage fault on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": type(exc).__name__, "message": str(exc), "detail": None},
    )


# PUBLIC_INTERFACE
@app.get("/", summary="Health Check", tags=["health"])
def health_check():
    """
    Health check endpoint.

    Returns:
        A JSON object indicating service health.
    """
    return {"message": "Healthy", "backend": _settings.persistence_backend}


# Include routers
app.include_router(tasks_router.router)
