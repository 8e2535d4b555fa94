from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .auth.router import router as auth_router
from .auth.exceptions import AccountSecurityError, AccountLocked, WeakPassword
from .config.redis_config import close_redis_connections, ping_redis
from .config.security_config import LOCKOUT_BACKEND
from .core.logging import get_logger
from .database import create_tables

logger = get_logger(__name__)

app = FastAPI(
    title="Account Security API",
    description="Password, lockout and MFA challenge services for privileged accounts",
    version="1.0.0"
)

# Include routers
app.include_router(auth_router)


@app.exception_handler(AccountSecurityError)
async def account_security_error_handler(request: Request, exc: AccountSecurityError):
    """Map core errors to generic responses; the specific reason stays in the audit trail."""
    body = {"detail": exc.public_message, "code": exc.code}
    headers = {}
    if isinstance(exc, WeakPassword):
        body["errors"] = exc.errors
    if isinstance(exc, AccountLocked) and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {str(exc)}", {"path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


# Create database tables and test Redis connection on startup
@app.on_event("startup")
def startup_event():
    create_tables()

    if LOCKOUT_BACKEND == "redis":
        if ping_redis():
            logger.info("Redis connection established successfully")
        else:
            logger.error("Redis connection failed")


# Close Redis connections on shutdown
@app.on_event("shutdown")
def shutdown_event():
    close_redis_connections()


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "lockout_backend": LOCKOUT_BACKEND,
        "redis": ping_redis() if LOCKOUT_BACKEND == "redis" else None
    }
