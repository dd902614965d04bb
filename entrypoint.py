import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from constants import HEARTBEAT_INTERVAL_SECONDS, HOST, PORT, SHUTDOWN_GRACE_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info(f"Starting chat relay on {HOST}:{PORT}")
    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        timeout_graceful_shutdown=int(SHUTDOWN_GRACE_SECONDS),
        # protocol-level ping/pong; a client that misses one interval is closed
        ws_ping_interval=HEARTBEAT_INTERVAL_SECONDS or None,
        ws_ping_timeout=HEARTBEAT_INTERVAL_SECONDS or None,
    )
