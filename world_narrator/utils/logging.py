from __future__ import annotations

import sys
from loguru import logger


_DEFAULT_CONTEXT = {
    "world_id": "-",
    "turn_id": "-",
    "phase": "-",
    "attempt": "-",
    "subscription": "-",
}


def _inject_default_context(record: dict) -> None:
    extra = record["extra"]
    for key, value in _DEFAULT_CONTEXT.items():
        extra.setdefault(key, value)


def setup_logging(level: str) -> None:
    """Configure loguru logging for CLI runs."""
    logger.remove()
    logger.configure(patcher=_inject_default_context)
    logger.add(
        sys.stderr,
        level=level,
        backtrace=True,
        diagnose=False,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> "
            "| <level>{level:<8}</level> "
            "| world={extra[world_id]} turn={extra[turn_id]} phase={extra[phase]} "
            "attempt={extra[attempt]} sub={extra[subscription]} "
            "| {message}"
        ),
    )


def truncate_payload(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}...<truncated {len(text) - max_chars} chars>"
