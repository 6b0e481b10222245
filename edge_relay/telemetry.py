"""Logging and telemetry for the edge relay.

Emits structured log records to stdout and appends them to an append-only
log file for local review. Tokens, message content and audio never reach
the log.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("relay")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def setup_logging(log_file: Optional[str], level: int = logging.INFO) -> None:
    """Attach a stdout handler and, if ``log_file`` is set, an append-only file handler.

    Handlers are only attached on the first call; later calls just reset
    the level.

    Args:
        log_file: Path to the append-only log file, or empty for stdout only.
        level: Minimum level for the relay logger and its handlers.
    """
    logger.setLevel(level)
    if logger.handlers:
        return

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        os.makedirs(log_path.parent, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, mode="a"))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def log_request(
    *,
    request_id: str,
    route: str,
    origin: str,
    outcome: str,
    language: Optional[str] = None,
    categories: Optional[List[str]] = None,
    error: Optional[str] = None
) -> None:
    """Log a single relay request event.

    This writes a structured JSON line to both stdout and the log file.

    Args:
        request_id: Relay-assigned request ID.
        route: The relay route (e.g. "/api/chat").
        origin: The declared caller origin.
        outcome: Short outcome label (e.g. "success", "identity_error").
        language: Detected or declared language code, if known.
        categories: Safety categories for a rejected request.
        error: Error message if the request failed.
    """
    record: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
        "route": route,
        "origin": origin or "(none)",
        "outcome": outcome,
    }

    if language:
        record["language"] = language

    if categories:
        record["categories"] = categories

    if error:
        record["error"] = error

    logger.info(json.dumps(record))
