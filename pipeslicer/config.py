# config.py
# Runtime settings, read once from the environment.

import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# =============================================================================
# Storage
# =============================================================================

DB_PATH = os.environ.get("PIPESLICER_DB_PATH", "data/pipeslicer.db")


# =============================================================================
# Registry HTTP client
# =============================================================================

# Seconds allowed for every outbound registry call
REQUEST_TIMEOUT = float(os.environ.get("PIPESLICER_REQUEST_TIMEOUT", "30"))

# Docker Hub token exchange and well-known registry host
DOCKERHUB_AUTH_URL = os.environ.get("DOCKERHUB_AUTH_URL", "https://auth.docker.io/token")
DOCKERHUB_SERVICE = os.environ.get("DOCKERHUB_SERVICE", "registry.docker.io")
DOCKERHUB_REGISTRY_HOST = os.environ.get("DOCKERHUB_REGISTRY_HOST", "registry-1.docker.io")

# Optional account used for Docker Hub connections stored without credentials
DOCKERHUB_IDENTIFIER = os.environ.get("DOCKERHUB_IDENTIFIER", "")
DOCKERHUB_SECRET = os.environ.get("DOCKERHUB_SECRET", "")


# =============================================================================
# API server / logging
# =============================================================================

API_HOST = os.environ.get("PIPESLICER_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("PIPESLICER_API_PORT", "8000"))
API_RELOAD = _env_bool("PIPESLICER_API_RELOAD")

LOG_LEVEL = os.environ.get("PIPESLICER_LOG_LEVEL", "INFO").upper()
