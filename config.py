from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

# Storage
UPLOADS_DIR = Path(os.getenv("UPLOADS_DIR", str(BASE_DIR / "uploads")))
OSM_UPLOAD_DIR = Path(os.getenv("OSM_UPLOAD_DIR", str(UPLOADS_DIR / "osm")))
OSM_OUTPUT_DIR = Path(os.getenv("OSM_OUTPUT_DIR", str(UPLOADS_DIR / "osm")))

# Uploads
ALLOWED_EXTENSIONS = (".osm", ".xml")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 100 * 1024 * 1024))

# External converter
PYTHON_EXECUTABLE = os.getenv("PYTHON_EXECUTABLE", sys.executable)
CONVERTER_SCRIPT = Path(os.getenv("CONVERTER_SCRIPT", str(BASE_DIR / "osm_to_dxf.py")))
MAX_CONCURRENT_JOBS = int(os.getenv("MAX_CONCURRENT_JOBS", 4))
# 0 disables the deadline
JOB_TIMEOUT_SECONDS = float(os.getenv("JOB_TIMEOUT_SECONDS", 30 * 60))
# How often a running job checks the store for a cancellation made by another process
CANCEL_POLL_SECONDS = float(os.getenv("CANCEL_POLL_SECONDS", 1.0))

DEFAULT_PROJECTION = os.getenv("DEFAULT_PROJECTION", "EPSG:3857")
PLAN_TYPES = ("key-plan", "location-plan")
DEFAULT_PLAN_TYPE = "key-plan"

# Job store
JOB_STORE = os.getenv("JOB_STORE", "memory").lower()  # memory | redis
REDIS_URL = os.getenv("REDIS_URL")
REDIS_PREFIX = os.getenv("REDIS_PREFIX", "drafteam:osm:")
JOB_TTL_SECONDS = int(os.getenv("JOB_TTL_SECONDS", 60 * 60 * 24))
MAX_STORED_JOBS = int(os.getenv("MAX_STORED_JOBS", 500))

if JOB_STORE == "redis" and not REDIS_URL:
    raise RuntimeError("REDIS_URL is required when JOB_STORE=redis")
