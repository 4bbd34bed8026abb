"""
FastAPI service for the School Admin backend.

Timetabling, the double-entry ledger and student finance behind one API.
"""

import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .academic_routes import router as academic_router
from .accounting_routes import router as accounting_router
from .config import settings
from .database import Base, SessionLocal, engine
from .ledger import seed_chart_of_accounts
from .student_routes import router as student_router
from .timetable_routes import router as timetable_router
from .user_routes import auth_router
from .user_routes import router as user_router
from .users import seed_roles_and_admin

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug_solver else logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

if settings.debug_solver:
    logger.info("DEBUG_SOLVER is enabled - verbose logging active")


def init_db(bind=None, session_factory=None) -> None:
    """Create tables and seed roles, the administrator and the chart of accounts."""
    Base.metadata.create_all(bind=bind or engine)
    db = (session_factory or SessionLocal)()
    try:
        seed_roles_and_admin(db)
        seed_chart_of_accounts(db)
        db.commit()
    finally:
        db.close()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    logger.info(f"School Admin API {__version__} ready")
    yield


app = FastAPI(
    title="School Admin API",
    description="Timetable generation, general ledger and student finance",
    version=__version__,
    lifespan=lifespan,
)

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
]

# Also allow origin from environment variable
if settings.frontend_url:
    ALLOWED_ORIGINS.append(settings.frontend_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(user_router)
app.include_router(academic_router)
app.include_router(timetable_router)
app.include_router(accounting_router)
app.include_router(student_router)


@app.get("/")
async def root():
    return {"message": "School Admin API", "version": __version__}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": time.time()}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run(app, host="0.0.0.0", port=port)
