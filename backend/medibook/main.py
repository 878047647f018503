import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .database import engine, init_db
from . import models  # noqa: F401
from .errors import MediBookError
from .notification_service import notification_service
from .rate_limit import build_rate_limit_store
from .admin import router as admin_router
from .appointments import router as appointments_router
from .auth import router as auth_router
from .blog import router as blog_router
from .doctors import router as doctors_router
from .profile import router as profile_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    notification_service.start()
    logger.info("MediBook API started")

    yield

    notification_service.shutdown()
    logger.info("MediBook API shutting down")


app = FastAPI(title="MediBook API", lifespan=lifespan)
app.state.rate_limit_store = build_rate_limit_store(settings.RATE_LIMIT_BACKEND, engine)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(MediBookError)
async def medibook_error_handler(request: Request, exc: MediBookError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected error occurred. Please try again later.", "code": "INTERNAL_ERROR"},
    )


# Include API routers
app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(profile_router, prefix="/profile", tags=["profiles"])
app.include_router(doctors_router, prefix="/doctors", tags=["doctors"])
app.include_router(appointments_router, prefix="/appointments", tags=["appointments"])
app.include_router(admin_router, prefix="/admin", tags=["admin"])
app.include_router(blog_router, prefix="/blog", tags=["blog"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "ok"}
