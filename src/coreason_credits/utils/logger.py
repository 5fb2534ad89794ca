# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_credits

import os
import sys

from loguru import logger

__all__ = ["logger"]

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

# Remove the default handler so the sinks below are the only ones
logger.remove()

logger.add(
    sys.stderr,
    level=os.getenv("COREASON_CREDITS_LOG_LEVEL", "INFO"),
    format=LOG_FORMAT,
)

log_path = os.getenv("COREASON_CREDITS_LOG_PATH", "logs/app.log")
log_dir = os.path.dirname(log_path)
if log_dir:
    os.makedirs(log_dir, exist_ok=True)

logger.add(
    log_path,
    level="INFO",
    rotation="500 MB",
    retention="10 days",
    serialize=True,
    enqueue=True,
)
