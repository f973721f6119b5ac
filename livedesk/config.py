"""
Runtime configuration, read from the environment (and a local .env file).
"""
import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# Session timers (seconds)
QUEUE_TIMEOUT_SECONDS = float(os.getenv("QUEUE_TIMEOUT_SECONDS", str(10 * 60)))
IDLE_TIMEOUT_SECONDS = float(os.getenv("IDLE_TIMEOUT_SECONDS", str(10 * 60 + 30)))
AGENT_RECONNECT_SECONDS = float(os.getenv("AGENT_RECONNECT_SECONDS", str(5 * 60)))
FAREWELL_DELAY_SECONDS = float(os.getenv("FAREWELL_DELAY_SECONDS", "5"))

RECONNECT_HISTORY_SIZE = int(os.getenv("RECONNECT_HISTORY_SIZE", "10"))
MEANINGFUL_MESSAGE_COUNT = int(os.getenv("MEANINGFUL_MESSAGE_COUNT", "2"))

# Knowledge base search
SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.4"))
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "all-MiniLM-L6-v2")
CHROMA_PERSIST_PATH = os.getenv("CHROMA_PERSIST_PATH", os.path.join(os.getcwd(), "chroma_db"))
CHROMA_COLLECTION_NAME = os.getenv("CHROMA_COLLECTION_NAME", "knowledge_base")

# Generation model
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Telemetry
OTEL_ENABLED = _flag("OTEL_ENABLED")
OTEL_ENDPOINT = os.getenv("OTEL_ENDPOINT", "http://localhost:4328")
SERVICE_NAME = os.getenv("SERVICE_NAME", "livedesk")
ENVIRONMENT = os.getenv("ENVIRONMENT", "production")

# Development builds fail loudly on registry inconsistencies
STRICT_INVARIANTS = _flag("STRICT_INVARIANTS", "1" if ENVIRONMENT == "development" else "0")

HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8001"))

# Development agent accounts: "agent_id:Display Name:token" entries, comma separated
DEV_AGENTS = os.getenv("DEV_AGENTS", "")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost,http://localhost:8000,http://localhost:8001,http://127.0.0.1:8001",
    ).split(",")
    if origin.strip()
]
