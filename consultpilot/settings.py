"""
Centralized configuration for ConsultPilot.
Env-based constants, overridable per component via constructor kwargs.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# --- LLM ---
COMPLETION_MODEL = os.getenv("COMPLETION_MODEL", "gemini-2.0-flash")
DIAGNOSTIC_MODEL = os.getenv("DIAGNOSTIC_MODEL", "gemini-2.0-flash")
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "2"))

# --- Conversation timing (seconds) ---
CONVERSATION_WINDOW_SECONDS = int(os.getenv("CONVERSATION_WINDOW_SECONDS", str(30 * 60)))
QUICK_RESPONSE_SECONDS = int(os.getenv("QUICK_RESPONSE_SECONDS", str(7 * 60)))

# --- Completeness gate ---
GATE_COOLDOWN_SECONDS = float(os.getenv("GATE_COOLDOWN_SECONDS", "30"))
GATE_MIN_MESSAGES = int(os.getenv("GATE_MIN_MESSAGES", "3"))

# --- Completion analyzer ---
ANALYSIS_INTERVAL_SECONDS = float(os.getenv("ANALYSIS_INTERVAL_SECONDS", "60"))
TRIGGER_CONFIDENCE = float(os.getenv("TRIGGER_CONFIDENCE", "0.7"))

# --- Storage ---
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "consultpilot_dev")
GCS_SERVICE_ACCOUNT_JSON = os.getenv("GCS_SERVICE_ACCOUNT_JSON") or None
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory")  # "memory" or "gcs"
LOCK_LEASE_SECONDS = int(os.getenv("LOCK_LEASE_SECONDS", "600"))

# --- Queue ---
QUEUE_IDLE_TIMEOUT_SECONDS = int(os.getenv("QUEUE_IDLE_TIMEOUT_SECONDS", "1800"))

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))
