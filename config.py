"""
CONFIGURATION MODULE
====================

PURPOSE:
  Central place for all relay settings: where the local model server lives,
  which model to use by default, timeouts for both hops, store capacities,
  and where the terminal client keeps its conversation list.

WHAT THIS FILE DOES:
  - Loads environment variables from .env (so deployments can override defaults).
  - Exposes OLLAMA_BASE_URL, DEFAULT_MODEL and the upstream timeouts used by the backend.
  - Defines the in-memory conversation cap (server) and the local list cap (client).
  - Defines the API prefix, host and port used by run.py and the client.

USAGE:
  Import what you need: `from config import OLLAMA_BASE_URL, DEFAULT_MODEL`
  All services import from here so behaviour is consistent.
"""

import os
import logging
from pathlib import Path
from dotenv import load_dotenv


# -----------------------------------------------------------------------------
# LOGGING
# -----------------------------------------------------------------------------
logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# ENVIRONMENT
# -----------------------------------------------------------------------------
# Load environment variables from .env file (if it exists).
load_dotenv()


def _env_float(name: str, default: float) -> float:
    """Read a float from the environment; fall back to default (with a warning) if it is not a number."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid value for %s: %r (using %s)", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, default))


# -----------------------------------------------------------------------------
# BASE PATH
# -----------------------------------------------------------------------------
BASE_DIR = Path(__file__).parent


# ============================================================================
# MODEL SERVER (UPSTREAM) CONFIGURATION
# ============================================================================
# The relay talks to an Ollama-compatible server: POST /api/chat for completions
# and GET /api/tags for health and the model list.
# UPSTREAM_TIMEOUT bounds one whole chat turn (wall clock), streaming or not.

OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434").rstrip("/")
DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", "llama2")

UPSTREAM_TIMEOUT = _env_float("UPSTREAM_TIMEOUT", 180.0)
UPSTREAM_CONNECT_TIMEOUT = _env_float("UPSTREAM_CONNECT_TIMEOUT", 10.0)
HEALTH_TIMEOUT = _env_float("HEALTH_TIMEOUT", 5.0)
MODELS_TIMEOUT = _env_float("MODELS_TIMEOUT", 10.0)


# ============================================================================
# CONVERSATION LIMITS
# ============================================================================
# Conversations live in process memory only. When more than MAX_CONVERSATIONS
# exist, the one inserted longest ago is dropped.
MAX_CONVERSATIONS = _env_int("MAX_CONVERSATIONS", 100)

# Maximum length (characters) for a single user message.
MAX_MESSAGE_LENGTH = _env_int("MAX_MESSAGE_LENGTH", 32_000)


# ============================================================================
# HTTP SERVER
# ============================================================================
API_PREFIX = os.getenv("API_PREFIX", "/api/v1").rstrip("/")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 3001)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


# ============================================================================
# TERMINAL CLIENT
# ============================================================================
# The client keeps its own, shorter list of recent conversations on disk.
# It is not synchronised with the server store beyond the final message text.

CHAT_API_URL = os.getenv("CHAT_API_URL", f"http://localhost:{PORT}{API_PREFIX}").rstrip("/")
CLIENT_TIMEOUT = _env_float("CLIENT_TIMEOUT", 120.0)
MAX_LOCAL_CONVERSATIONS = _env_int("MAX_LOCAL_CONVERSATIONS", 20)
CLIENT_DATA_DIR = Path(os.getenv("CLIENT_DATA_DIR", str(BASE_DIR / "database" / "client_data")))
