# app/main.py
from fastapi import FastAPI
from app.core.config import settings
from app.core.version import VERSION
from app.api.endpoints import payment
from app.x402.middleware import X402Middleware
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=VERSION,
    openapi_url=f"{settings.API_PREFIX}/openapi.json"
)

# Gates every route priced in the x402 route registry
app.add_middleware(X402Middleware)

app.include_router(payment.router, prefix=f"{settings.API_PREFIX}/payment", tags=["payment"])
app.include_router(payment.admin_router, prefix=f"{settings.API_PREFIX}/admin", tags=["admin"])

@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {
        "status": "ok",
        "message": f"Welcome to {settings.PROJECT_NAME}",
        "version": VERSION,
        "x402_enabled": settings.X402_ENABLED,
    }
