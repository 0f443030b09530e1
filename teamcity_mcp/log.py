"""Stderr logging helpers. Stdout belongs to the MCP stdio transport."""

import os
import sys
from typing import Any, Dict

LEVELS = {"debug": 10, "info": 20, "warn": 30, "error": 40}
SECRET_KEYS = ("token", "password", "authorization", "secret")

_threshold = LEVELS.get(os.environ.get("LOG_LEVEL", "info").lower(), LEVELS["info"])


def set_level(level: str):
    global _threshold
    level = level.lower()
    if level not in LEVELS:
        raise ValueError(f"Unknown log level '{level}'. Expected one of: {', '.join(LEVELS)}")
    _threshold = LEVELS[level]


def _emit(level: str, message):
    if LEVELS[level] >= _threshold:
        print(f"{level.upper()}: {message}", file=sys.stderr)


def debug_log(message):
    """Log debug messages to stderr for debugging purposes."""
    _emit("debug", message)


def info_log(message):
    _emit("info", message)


def warn_log(message):
    _emit("warn", message)


def error_log(message):
    _emit("error", message)


def mask_secrets(args: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of tool arguments with credential-like values replaced by ***."""
    masked = {}
    for key, value in args.items():
        if any(secret in key.lower() for secret in SECRET_KEYS):
            masked[key] = "***"
        elif isinstance(value, dict):
            masked[key] = mask_secrets(value)
        else:
            masked[key] = value
    return masked
