from __future__ import annotations

import socket
import sys
import uuid

from loguru import logger


def make_worker_id(prefix: str = "worker") -> str:
    """Lease holder name, unique per process."""
    return f"{prefix}-{socket.gethostname()}-{uuid.uuid4().hex[:12]}"[:100]


def configure_logging(level: str = "INFO") -> None:
    # Setup logger to stdout for systemd/cron
    logger.remove()
    logger.add(sys.stdout, level=level)
