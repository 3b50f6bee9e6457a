import logging
import os
from config.settings import LOG_FILE

os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)

logging.basicConfig(
    filename=str(LOG_FILE),
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)

logger = logging.getLogger("vm-orchestrator")


def log_event(message: str, level: int = logging.INFO) -> None:
    """
    Write a single line event to the main vm-orchestrator.log file.

    Reconciliation and provider failures go through here as WARNING/ERROR so
    they can be grepped apart from the normal lifecycle chatter.
    """
    logger.log(level, message)
