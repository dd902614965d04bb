import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

REDIS_URL = os.getenv(
    "REDIS_URL",
    f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}" if REDIS_PASSWORD else f"redis://{REDIS_HOST}:{REDIS_PORT}",
)

# "redis" for deployments, "memory" for a single local process
BROKER_BACKEND = os.getenv("BROKER_BACKEND", "redis")
EXCHANGE_NAME = os.getenv("EXCHANGE_NAME", "chat_exchange")

HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("HEARTBEAT_INTERVAL_SECONDS", 30))
SHUTDOWN_GRACE_SECONDS = float(os.getenv("SHUTDOWN_GRACE_SECONDS", 10))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", 2000))
ROOM_ID_LENGTH = int(os.getenv("ROOM_ID_LENGTH", 7))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))

SYSTEM_SENDER = "System"

# WebSocket close codes
WS_POLICY_VIOLATION = 1008
WS_INTERNAL_ERROR = 1011
WS_GOING_AWAY = 1001
