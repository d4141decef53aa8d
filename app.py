from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.httpsredirect import HTTPSRedirectMiddleware
from fastapi.responses import JSONResponse
from config import settings
from services.errors import ServiceError
from utils.rate_guard import build_rate_guard
from utils.responses import error_response
import uvicorn
import logging
import os

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Import routes
from routes import payments_router, reconciliations_router

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "*",
    "Access-Control-Allow-Headers": "*",
}

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="CODLedger - Cash-on-Delivery Collection and Daily Cash Reconciliation API",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,  # Cache preflight requests for 1 hour
)

# Enforce HTTPS in production (TLS terminated at the proxy)
if os.getenv("FORCE_HTTPS"):
    app.add_middleware(HTTPSRedirectMiddleware)

# One rate guard per process
app.state.rate_guard = build_rate_guard(settings)
app.state.sweep_scheduler = None


# Classified service failures: stable code, no internals
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    headers = dict(CORS_HEADERS)
    if "retry_after" in exc.details:
        headers["Retry-After"] = str(exc.details["retry_after"])
    return error_response(
        message=exc.message,
        status_code=exc.http_status,
        error_code=exc.code,
        error_kind=exc.kind.value,
        headers=headers
    )


# Global exception handler with CORS headers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "detail": str(exc) if settings.DEBUG else "An error occurred"
        },
        headers=CORS_HEADERS
    )


# HTTPException handler with CORS headers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    headers = dict(CORS_HEADERS)
    if exc.headers:
        headers.update(exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
        },
        headers=headers
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(
        message="Invalid request payload",
        errors=[{"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in exc.errors()],
        status_code=422,
        error_code="invalid_request",
        error_kind="validation_error",
        headers=CORS_HEADERS
    )


# Health check endpoint
@app.get("/")
def root():
    return {
        "success": True,
        "message": "CODLedger API is running",
        "version": settings.APP_VERSION
    }


@app.get("/health")
def health_check():
    return {
        "success": True,
        "message": "Service is healthy",
        "status": "ok"
    }


@app.get("/health/db")
def health_check_db():
    """Check database connectivity"""
    from database import check_db_connection
    if check_db_connection():
        return {
            "success": True,
            "message": "Database connection successful",
            "status": "ok"
        }
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "message": "Database connection failed",
            "status": "error"
        }
    )


# Include routers with /api prefix
app.include_router(payments_router, prefix="/api")
app.include_router(reconciliations_router, prefix="/api")


# Startup event
@app.on_event("startup")
async def startup_event():
    logger.info(f"🚀 {settings.APP_NAME} v{settings.APP_VERSION} is starting...")
    logger.info(f"📚 Documentation available at: /docs")

    # Initialize database tables
    try:
        from database import init_db
        logger.info("📊 Initializing database tables...")
        init_db()
        logger.info("✅ Database tables initialized successfully")
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {str(e)}", exc_info=True)

    if settings.SWEEP_ENABLED:
        from services.scheduler import DailySweepScheduler
        scheduler = DailySweepScheduler(hour=settings.SWEEP_HOUR, minute=settings.SWEEP_MINUTE)
        scheduler.start()
        app.state.sweep_scheduler = scheduler
    else:
        logger.info("ℹ️ Daily reconciliation sweep is disabled")

    logger.info("✅ API ready to receive requests")


# Shutdown event
@app.on_event("shutdown")
async def shutdown_event():
    scheduler = app.state.sweep_scheduler
    if scheduler:
        await scheduler.stop()
    logger.info(f"👋 Shutting down {settings.APP_NAME}...")


# Run the application
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
        log_level="info"
    )
