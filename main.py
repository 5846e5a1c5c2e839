from fastapi import FastAPI, Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import logging

from core.config import settings
from core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from core.exceptions import BaseCustomException, InvariantViolationError
from core.response import error_response
from database.connection import create_tables
from routers import deliveries, partners, payments

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="KTR Delivery API",
    description="Delivery marketplace core: pricing, matching, bidding, lifecycle and settlement",
    version="1.0.0"
)


@app.exception_handler(BaseCustomException)
async def custom_exception_handler(request: Request, exc: BaseCustomException):
    """Map domain errors to the standard error body."""
    request_id = getattr(request.state, 'request_id', 'unknown')
    log = logger.error if isinstance(exc, InvariantViolationError) else logger.warning
    log(f"{exc.kind} [{request_id}] on {request.method} {request.url.path}: {exc.message}")

    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(error_response(
            message=exc.message,
            error_code=exc.kind,
            details=exc.details,
            request_id=request_id
        ))
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(f"Validation error [{request_id}] on {request.method} {request.url.path}: {exc}")

    error_details = []
    for error in exc.errors():
        error_details.append({
            "field": '.'.join(str(x) for x in error['loc']),
            "message": error['msg'],
            "type": error['type']
        })

    return JSONResponse(
        status_code=422,
        content=jsonable_encoder(error_response(
            message="Request validation failed",
            error_code="ValidationError",
            details={"errors": error_details},
            request_id=request_id
        ))
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.warning(f"HTTP exception [{request_id}] on {request.method} {request.url.path}: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(
            message=str(exc.detail) if isinstance(exc.detail, str) else "HTTP error occurred",
            error_code="HTTP_ERROR",
            details={"status_code": exc.status_code},
            request_id=request_id
        )
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    request_id = getattr(request.state, 'request_id', 'unknown')
    logger.error(f"Unexpected error [{request_id}] on {request.method} {request.url.path}: {str(exc)}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content=error_response(
            message="An unexpected error occurred. Please try again.",
            error_code="INTERNAL_SERVER_ERROR",
            request_id=request_id
        )
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.DEBUG else [],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

# Order matters: the last middleware added runs first
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(deliveries.router)
app.include_router(partners.router)
app.include_router(payments.router)


@app.on_event("startup")
async def startup_event():
    """Initialize the application on startup."""
    try:
        logger.info("Starting up KTR Delivery API...")
        create_tables()
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to start application: {str(e)}")
        raise


@app.get("/health")
def health_check():
    return {"status": "healthy", "version": "1.0.0", "environment": settings.ENVIRONMENT}
