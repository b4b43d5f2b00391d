"""
Expense Workflow API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..config import get_config
from ..errors import WorkflowError
from ..logging_config import get_logger
from .dependencies import WorkflowSystem
from .workflows import router as workflows_router
from .reports import router as reports_router
from .approvals import router as approvals_router
from .admin import router as admin_router

logger = get_logger("expense_workflow.api")

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
}


def _error_response(status_code: int, message: str, code: str, details=None) -> JSONResponse:
    body = {"message": message, "code": code}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


def create_app(system: Optional[WorkflowSystem] = None, start_scheduler: bool = True) -> FastAPI:
    """Create and configure the FastAPI application"""
    if system is None:
        system = WorkflowSystem(get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler and system.config.scheduler_enabled:
            system.scheduler.start()
        yield
        system.close()

    app = FastAPI(
        title="Expense Workflow Approval API",
        description="Multi-step approval routing for expense reports with SLA escalation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        if exc.http_status >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error_response(400, "Request validation failed", "VALIDATION_ERROR",
                               jsonable_encoder(exc.errors()))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
        return _error_response(exc.status_code, str(exc.detail), code)

    # Include routers
    app.include_router(workflows_router, prefix="/workflows", tags=["Workflows"])
    app.include_router(reports_router, prefix="/expense-reports", tags=["Expense Reports"])
    app.include_router(approvals_router, prefix="/approvals", tags=["Approvals"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "expense_workflow_api",
            "version": __version__,
            "schedulerRunning": system.scheduler.is_running()
        }

    return app
