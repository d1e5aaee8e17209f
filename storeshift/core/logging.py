from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_SECRET_MARKERS = ("secret", "password", "key", "token", "credential", "connection_string", "sas")
_REDACTED = "***"
_PUBLIC_NAMES = {"key_prefix"}


def configure_logging(level: str) -> None:
    normalized = level.strip().upper() or "INFO"
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(normalized)
    logging.getLogger("storeshift").setLevel(normalized)
    # boto's wire logging leaks request signatures at DEBUG.
    for noisy in ("botocore", "boto3", "s3transfer", "urllib3"):
        logging.getLogger(noisy).setLevel(max(logging.INFO, root.getEffectiveLevel()))


def _is_secret_key(name: str) -> bool:
    lowered = name.lower()
    if lowered in _PUBLIC_NAMES:
        return False
    return any(marker in lowered for marker in _SECRET_MARKERS)


def redact_config(config: Mapping[str, Any] | None) -> dict[str, Any]:
    if not config:
        return {}
    redacted: dict[str, Any] = {}
    for name, value in config.items():
        if isinstance(value, Mapping):
            redacted[name] = redact_config(value)
        elif _is_secret_key(str(name)) and value not in (None, ""):
            redacted[name] = _REDACTED
        else:
            redacted[name] = value
    return redacted
