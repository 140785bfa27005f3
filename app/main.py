import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import config
from app.admin_routes import router as admin_router
from app.affiliate_routes import router as affiliate_router
from app.database import Base, engine
from app.errors import ServiceError
from app.routes import router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

app = FastAPI(title=config.APP_NAME, version=config.APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

app.include_router(router)
app.include_router(admin_router)
app.include_router(affiliate_router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health")
def health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": config.APP_VERSION,
    }


@app.get("/")
def root():
    return {
        "message": config.APP_NAME,
        "status": "running",
        "version": config.APP_VERSION,
        "endpoints": {
            "health": "/health",
            "payments": "/payments",
            "affiliates": "/affiliates",
            "admin": "/admin",
        },
    }
