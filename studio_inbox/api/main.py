"""
FastAPI Backend for the Studio Inbox

Multi-account inbox: accounts, folders, messages, conversations, contacts,
rules, templates, search, bulk changes and on-demand sync.
"""
from fastapi import FastAPI, Request as FastAPIRequest
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import logging
import re
import uuid

from studio_inbox.api.routes import accounts, folders, messages, search, contacts, rules, templates
from studio_inbox.core.database import init_db, create_tables
from studio_inbox.core.config import get_settings
from studio_inbox.core.email.errors import InboxError

settings = get_settings()
logger = logging.getLogger(__name__)
error_logger = logging.getLogger("api.errors")


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


# Create FastAPI app
app = FastAPI(
    title="Studio Inbox API",
    description="Multi-account inbox with sync, threading, search and rules",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)


def _sanitize_error_message(message: str) -> str:
    """
    Scrub potential secrets from exception messages before logging:
    database URLs with passwords, credential env vars, Fernet keys and
    bearer tokens.
    """
    sanitized = re.sub(
        r'(postgresql|postgres|mysql|sqlite)://[^:]+:[^@]+@',
        r'\1://[USER]:[REDACTED]@',
        message,
        flags=re.IGNORECASE
    )

    sensitive_patterns = [
        (r'(IMAP_PASSWORD\w*|OAUTH2_TOKEN\w*|DB_ENCRYPTION_KEY\w*|API_KEY)[=:\s]+[^\s,;]+', r'\1=[REDACTED]'),
        (r'(password|passwd|secret|token|key)["\']?\s*[=:]\s*["\']?[^"\'\s,;]+', r'\1=[REDACTED]'),
        (r'(auth=Bearer\s+)[^\s\x01]+', r'\1[REDACTED]'),
    ]
    for pattern, replacement in sensitive_patterns:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    # Anything that looks like a Fernet key (base64, 44 chars)
    sanitized = re.sub(r'[A-Za-z0-9_-]{43}=', '[REDACTED_KEY]', sanitized)
    return sanitized


def _error_response(status_code: int, kind: str, message: str, details=None) -> JSONResponse:
    error = {"kind": kind, "message": message}
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@app.exception_handler(InboxError)
async def inbox_error_handler(request: FastAPIRequest, exc: InboxError):
    """Domain errors cross the boundary as typed bodies with their HTTP status"""
    if exc.status_code >= 500:
        error_logger.warning(f"{exc.kind} on {request.method} {request.url.path}: "
                             f"{_sanitize_error_message(exc.message)}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: FastAPIRequest, exc: RequestValidationError):
    errors = [
        {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    return _error_response(422, "ValidationError", "Invalid request", {"errors": errors})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: FastAPIRequest, exc: StarletteHTTPException):
    kinds = {401: "AuthenticationError", 403: "AuthorizationError", 404: "NotFoundError", 405: "MethodNotAllowed"}
    return _error_response(exc.status_code, kinds.get(exc.status_code, "HTTPError"), str(exc.detail))


# Global exception handler for safe error messages
@app.exception_handler(Exception)
async def global_exception_handler(request: FastAPIRequest, exc: Exception):
    """
    Log detailed errors internally (secrets scrubbed) but return a generic
    typed error with a reference id to clients.
    """
    error_id = str(uuid.uuid4())
    sanitized_message = _sanitize_error_message(str(exc))

    error_logger.error(
        f"Error {error_id}: {type(exc).__name__}: {sanitized_message}",
        exc_info=True,
        extra={
            "error_id": error_id,
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else None
        }
    )

    return _error_response(
        500, "InboxError", "An internal error occurred",
        {"error_id": error_id, "hint": "The error has been logged. Reference this error ID."},
    )


# Startup event to initialize database
@app.on_event("startup")
async def startup_event():
    """Initialize database connection and tables on startup"""
    logging.basicConfig(level=settings.log_level.upper(), format=settings.log_format)
    try:
        init_db()
        create_tables()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        # Continue anyway - /health reports the problem


# Security headers middleware (add first - outermost)
app.add_middleware(SecurityHeadersMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key", "Authorization"],
    max_age=3600,  # Cache preflight requests for 1 hour
)

# Include routers
app.include_router(accounts.router)
app.include_router(folders.router)
app.include_router(messages.router)
app.include_router(search.router)
app.include_router(contacts.router)
app.include_router(rules.router)
app.include_router(templates.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": "Studio Inbox API",
        "version": "1.0.0",
        "status": "running",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint (no auth required)"""
    from sqlalchemy import text
    from studio_inbox.core.database import get_db

    health = {
        "status": "healthy",
        "version": "1.0.0",
        "database": "unknown",
    }

    try:
        db = next(get_db())
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        health["database"] = "connected"
    except Exception as e:
        health["database"] = f"error: {_sanitize_error_message(str(e))}"
        health["status"] = "degraded"  # Still running, but with issues

    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.api_port)
