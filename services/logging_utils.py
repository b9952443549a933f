"""Logging setup and outbound API call records for DoItTimer."""

import logging
from typing import Optional

from config import get_config

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


def log_api_request(
    logger: logging.Logger,
    method: str,
    path: str,
    status_code: Optional[int] = None,
    error: Optional[Exception] = None,
    attempt: int = 1,
) -> None:
    """Record one outbound API call (Notion) when ``log_api_requests`` is on.

    Args:
        logger: Logger of the calling client.
        method: HTTP method.
        path: Request path relative to the API base URL.
        status_code: Response status, when a response arrived.
        error: Transport error, when none did.
        attempt: 1-based attempt number; retries are marked in the message.
    """
    if not _is_api_logging_enabled():
        return

    line = f"{method} {path}"
    if attempt > 1:
        line += f" [attempt {attempt}]"
    context = {"http_method": method, "http_path": path, "attempt": attempt}

    if error is not None:
        logger.warning(f"{line} failed: {_truncate(str(error))}", extra=context)
        return
    if status_code is None:
        logger.debug(line, extra=context)
        return

    context["status_code"] = status_code
    if status_code < 400:
        logger.info(f"{line} -> {status_code}", extra=context)
    elif status_code in RETRYABLE_STATUSES or status_code >= 500:
        logger.warning(f"{line} -> {status_code} (transient)", extra=context)
    else:
        logger.error(f"{line} -> {status_code}", extra=context)


def _truncate(text: str, max_len: int = 200) -> str:
    text = (text or "").strip()
    return text if len(text) <= max_len else text[:max_len] + "..."


def configure_logging(level: str = "INFO", format_str: Optional[str] = None) -> None:
    """Configure root logging for the service.

    Args:
        level: Level name; unknown names fall back to INFO.
        format_str: Format string, or None for ``DEFAULT_FORMAT``.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=format_str or DEFAULT_FORMAT, force=True)

    # httpx logs every request at INFO; Notion calls go through log_api_request
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    logging.getLogger(__name__).info(
        f"Logging configured: level={level.upper()}, api_requests={_is_api_logging_enabled()}"
    )


def _is_api_logging_enabled() -> bool:
    try:
        return get_config().logging.log_api_requests
    except RuntimeError:
        # Before startup there is no config to consult
        return False
