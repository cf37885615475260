"""Console and rotating-file logging for a luxbot session.

Every line carries the session id, and the values of secret environment
variables (2FA password, API hash, AWS secret, webhook URL) are masked
wherever they appear, tracebacks included.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Iterable, Mapping, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s [%(session)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_PATH = os.path.join("logs", "luxbot.log")
DEFAULT_SECRET_ENV = ("2FA", "API_HASH", "AWS_SECRET_ACCESS_KEY", "SESSION_WEBHOOK")
MASK = "***"


@dataclass(frozen=True)
class LogSettings:
    enabled: bool = True
    level: int = logging.INFO
    console: bool = True
    file_path: Optional[str] = None
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5
    secret_env: tuple[str, ...] = DEFAULT_SECRET_ENV


def parse_log_settings(raw: Optional[Mapping[str, Any]], root: str) -> LogSettings:
    """Build LogSettings from the ``logging`` section of config.json.

    Relative file paths resolve against ``root``. Configured redact patterns
    extend the built-in secret names; ``redact.enabled: false`` turns
    masking off entirely.
    """

    raw = raw or {}
    level = logging.getLevelName(str(raw.get("level", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    file_cfg = raw.get("file") or {}
    file_path = None
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path") or DEFAULT_LOG_PATH
        file_path = path if os.path.isabs(path) else os.path.join(root, path)

    redact_cfg = raw.get("redact") or {}
    secret_env: tuple[str, ...] = ()
    if redact_cfg.get("enabled", True):
        names = [*DEFAULT_SECRET_ENV, *(redact_cfg.get("patterns") or [])]
        secret_env = tuple(dict.fromkeys(str(name) for name in names))

    return LogSettings(
        enabled=bool(raw.get("enabled", True)),
        level=level,
        console=bool(raw.get("console", True)),
        file_path=file_path,
        max_bytes=int(file_cfg.get("max_bytes", LogSettings.max_bytes)),
        backup_count=int(file_cfg.get("backup_count", LogSettings.backup_count)),
        secret_env=secret_env,
    )


def secret_values(names: Iterable[str], environ: Optional[Mapping[str, str]] = None) -> list[str]:
    """Return the non-empty values of ``names``, longest first."""

    env = os.environ if environ is None else environ
    values = {env[name] for name in names if env.get(name)}
    return sorted(values, key=len, reverse=True)


class MaskingFormatter(logging.Formatter):
    """Formatter that replaces known secret values with ``***``."""

    def __init__(self, secrets: Iterable[str], fmt: str = LOG_FORMAT, datefmt: str = DATE_FORMAT) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        secrets = sorted({secret for secret in secrets if secret}, key=len, reverse=True)
        self._pattern = re.compile("|".join(map(re.escape, secrets))) if secrets else None

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if self._pattern is None:
            return message
        return self._pattern.sub(MASK, message)


class SessionFilter(logging.Filter):
    """Stamps every record with the session id used in LOG_FORMAT."""

    def __init__(self, session_id: str) -> None:
        super().__init__()
        self.session_id = session_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.session = self.session_id
        return True


def configure_logging(
    log_settings: LogSettings,
    session_id: str,
    *,
    logger: Optional[logging.Logger] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> list[logging.Handler]:
    """Attach console and file handlers to ``logger`` (root by default)."""

    if not log_settings.enabled:
        return []

    formatter = MaskingFormatter(secret_values(log_settings.secret_env, environ))
    handlers: list[logging.Handler] = []

    if log_settings.console:
        handlers.append(logging.StreamHandler())

    if log_settings.file_path:
        directory = os.path.dirname(log_settings.file_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_settings.file_path,
                maxBytes=log_settings.max_bytes,
                backupCount=log_settings.backup_count,
                encoding="utf-8",
            )
        )

    target = logger or logging.getLogger()
    for handler in handlers:
        handler.setLevel(log_settings.level)
        handler.setFormatter(formatter)
        handler.addFilter(SessionFilter(session_id))
        target.addHandler(handler)
    if handlers:
        target.setLevel(log_settings.level)
    return handlers
