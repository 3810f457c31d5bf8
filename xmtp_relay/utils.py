#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import functools
import logging
import os
import sys
from pathlib import Path
from typing import Iterable, Optional, cast


def FilterTaskNoise(record: logging.LogRecord) -> bool:
    str_msg = str(getattr(record, "msg", ""))
    if "was destroyed but it is pending" in str_msg:
        return False
    if str_msg.startswith("task:") and str_msg.endswith(">"):
        return False
    return True


logger = logging.getLogger()
logger.setLevel("DEBUG")
fmt = logging.Formatter("{levelname} {module}:{lineno}: {message}", style="{")
console_handler = logging.StreamHandler()
console_handler.setLevel(
    ((os.getenv("LOGLEVEL") or os.getenv("LOG_LEVEL")) or "DEBUG").upper()
)
console_handler.setFormatter(fmt)
console_handler.addFilter(FilterTaskNoise)
logger.addHandler(console_handler)


#### Configure Parameters


def parse_secrets(secrets: str) -> dict[str, str]:
    pairs = [
        [part.strip() for part in line.split("=", 1)]
        for line in secrets.split("\n")
        if line.strip() and not line.startswith("#") and "=" in line
    ]
    can_be_a_dict = cast(list[tuple[str, str]], pairs)
    return {key: value for key, value in can_be_a_dict if key}


def secrets_path() -> Path:
    return Path(os.getenv("SECRETS_FILE") or ".env").absolute()


@functools.cache  # don't read the same file more than once
def load_secrets(path: Optional[str] = None) -> dict[str, str]:
    path = path or str(secrets_path())
    try:
        logging.info("loading secrets from %s", path)
        return parse_secrets(open(path, encoding="utf-8").read())
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeDecodeError) as e:
        logging.error("couldn't read secrets file %s: %s", path, e)
        return {}


def get_secret(key: str) -> str:
    try:
        secret = os.environ[key]
    except KeyError:
        secret = load_secrets(str(secrets_path())).get(key) or ""
    if secret.lower() in ("0", "false", "no"):
        return ""
    return secret


def validate_environment(keys: Iterable[str]) -> dict[str, str]:
    """
    Make sure every key is set, backfilling missing ones from the secrets file.

    Backfilled values are written to os.environ so code reading the
    environment directly sees them too. Exits with status 1 if anything is
    still missing.
    """
    keys = list(keys)
    missing = [key for key in keys if not os.environ.get(key)]
    if missing:
        secrets = load_secrets(str(secrets_path()))
        for key in missing:
            if secrets.get(key):
                os.environ[key] = secrets[key]
        still_missing = [key for key in keys if not os.environ.get(key)]
        if still_missing:
            logging.error("Missing env vars: %s", ", ".join(still_missing))
            sys.exit(1)
    return {key: os.environ[key] for key in keys}


## Parameters for easy access and ergonomic use

CHANNEL = "ethereum-messages"
REDIS_URL = get_secret("REDIS_URL") or "redis://localhost:6379"
GATEWAY_URL = get_secret("XMTP_GATEWAY_URL") or "http://localhost:5555/rpc"
DEFAULT_DB_PATH = "./data/xmtp_database"
XMTP_ENVS = ("local", "dev", "production")
RELAY_TIMEOUT = float(os.getenv("RELAY_TIMEOUT") or 60)
MAX_BACKOFF = float(os.getenv("MAX_BACKOFF") or 15)


#### Configure logging to file

if get_secret("LOGFILES"):
    handler = logging.FileHandler("debug.log")
    handler.setLevel("DEBUG")
    handler.setFormatter(fmt)
    handler.addFilter(FilterTaskNoise)
    logger.addHandler(handler)
