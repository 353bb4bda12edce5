# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_identity

import logging
import os
import re
import sys
from typing import Any

from loguru import logger
from opentelemetry import trace

__all__ = ["logger", "configure_logging", "redact_tokens"]

# header.payload.signature, each segment base64url; the "eyJ" prefix is '{"' encoded
_JWT_PATTERN = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")


class InterceptHandler(logging.Handler):
    """
    Redirects standard logging messages to Loguru.
    Ensures libraries using standard logging (httpx, authlib) are captured uniformly.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename in (logging.__file__, __file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def redact_tokens(message: str) -> str:
    """Replaces anything shaped like a compact JWT with a placeholder."""
    return _JWT_PATTERN.sub("<REDACTED_JWT>", message)


def _patch_record(record: dict[str, Any]) -> None:
    """
    Loguru patcher: strips bearer credentials from the message and injects
    OpenTelemetry trace_id and span_id into 'extra'.
    """
    record["message"] = redact_tokens(record["message"])

    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        record["extra"]["trace_id"] = format(ctx.trace_id, "032x")
        record["extra"]["span_id"] = format(ctx.span_id, "016x")


def configure_logging() -> None:
    """
    Configures the logger based on environment variables.
    Call this to reload configuration if env vars change.

    COREASON_LOG_LEVEL: minimum level (default INFO).
    COREASON_LOG_JSON: "true" for serialized JSON on stdout, otherwise human-readable text on stderr.
    """
    log_level = os.getenv("COREASON_LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("COREASON_LOG_JSON", "false").lower() == "true"

    try:
        logger.level(log_level)
    except ValueError:
        log_level = "INFO"

    logger.configure(handlers=[], patcher=_patch_record)

    if log_json:
        logger.add(sys.stdout, level=log_level, serialize=True)
    else:
        logger.add(
            sys.stderr,
            level=log_level,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
                "<level>{message}</level>"
            ),
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    numeric_level = logging.getLevelName(log_level)
    logging.getLogger().setLevel(numeric_level if isinstance(numeric_level, int) else logging.INFO)


# Initialize on import
configure_logging()
