from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from typing import List
import logging
import os

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Load environment variables from .env file
load_dotenv()
logger.info("Environment variables loaded")

from streamguard.core.database import engine, Base, register_models
from streamguard.api import locations as locations_router
from streamguard.api import fingerprints as fingerprints_router
from streamguard.api import anomalies as anomalies_router
from streamguard.api import tasks as tasks_router

register_models()
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="StreamGuard",
    description="Behavioral fingerprinting and anomaly detection for media server activity",
    version="1.0.0"
)


def _build_allowed_origins() -> List[str]:
    """
    Build the list of allowed origins for CORS.
    Local dashboard ports are always allowed in development.
    """
    raw = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
    configured = {origin.strip() for origin in raw.split(",") if origin.strip()}

    if os.getenv("ENVIRONMENT", "development") == "development":
        configured.update(
            {
                "http://localhost:3000",
                "http://127.0.0.1:3000",
                "http://localhost:5173",
                "http://127.0.0.1:5173",
            }
        )

    return sorted(configured)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_build_allowed_origins(),
    allow_origin_regex=os.getenv("ALLOWED_ORIGIN_REGEX", r"http://(?:127\.0\.0\.1|localhost):\d+$"),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(locations_router.router, prefix="/api", tags=["locations"])
app.include_router(fingerprints_router.router, prefix="/api", tags=["fingerprints"])
app.include_router(anomalies_router.router, prefix="/api", tags=["anomalies"])
app.include_router(tasks_router.router, prefix="/api", tags=["tasks"])


@app.get("/")
async def root():
    return {"message": "StreamGuard API", "version": "1.0.0"}


@app.get("/api/health")
async def health_check():
    return {"status": "healthy"}
