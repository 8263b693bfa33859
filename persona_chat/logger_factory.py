import datetime as _dt
import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_CONFIGURED = False
_FULL_ENABLED = False

# Third-party loggers that are chatty at DEBUG (request lines, connection pool)
NOISY_LIBRARIES = ("httpx", "httpcore", "asyncio")

LOG_PATTERN = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S%z"


class _TzFormatter(logging.Formatter):
    def __init__(self, *args, tz: Optional[str] = None, **kwargs):
        super().__init__(*args, **kwargs)
        # "UTC" forces UTC, None/"system" uses the host zone, anything else is an IANA name
        if tz == "UTC":
            self._tz = _dt.timezone.utc
        elif tz is None or tz == "system":
            self._tz = _dt.datetime.now().astimezone().tzinfo
        else:
            try:
                self._tz = ZoneInfo(tz)
            except ZoneInfoNotFoundError:
                self._tz = _dt.datetime.now().astimezone().tzinfo

    def formatTime(self, record, datefmt=None):
        dt = _dt.datetime.fromtimestamp(record.created, tz=self._tz)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat()


def _env_flag(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    return str(raw).strip().lower() in ("1", "true", "yes", "on")


def _normalize_level(level: Optional[str]) -> tuple[str, int]:
    lvl = (level or "INFO").upper()
    if lvl not in ("INFO", "DEBUG", "FULL", "WARNING", "ERROR"):
        lvl = "INFO"
    if lvl in ("DEBUG", "FULL"):
        return lvl, logging.DEBUG
    return lvl, getattr(logging, lvl)


def _rotating_handler(path: str, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    # Rotate at ~1MB with up to 5 backups
    handler = RotatingFileHandler(filename=path, mode="a", maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: Optional[str] = None,
    tz: Optional[str] = None,
    fmt: str = "text",
    lib_log_level: Optional[str] = None,
    console_to_file: bool | None = None,
    error_file: bool | None = None,
    log_dir: str = "logs",
    force: bool = False,
) -> None:
    """Install console (and optional rotating file) handlers on the root logger.

    Levels: INFO | DEBUG | FULL. FULL behaves like DEBUG and additionally lets
    callers dump whole request payloads (see ``is_full_enabled``).
    Environment overrides: LOG_CONSOLE mirrors the console to ``logs/log.log``,
    LOG_ERRORS writes ERROR+ to ``logs/errors.log``, LIB_LOG_LEVEL tunes httpx/httpcore.
    """
    global _CONFIGURED, _FULL_ENABLED
    if _CONFIGURED and not force:
        return
    lvl, py_level = _normalize_level(level)
    _FULL_ENABLED = (lvl == "FULL")

    root = logging.getLogger()
    root.setLevel(py_level)
    for h in list(root.handlers):
        root.removeHandler(h)

    # Only the text layout exists; "json" is accepted for config compatibility
    formatter = _TzFormatter(LOG_PATTERN, tz=tz, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(py_level)
    console.setFormatter(formatter)
    root.addHandler(console)

    mirror_enabled = _env_flag("LOG_CONSOLE")
    if mirror_enabled is None:
        mirror_enabled = bool(console_to_file)
    if mirror_enabled:
        try:
            root.addHandler(_rotating_handler(os.path.join(log_dir, "log.log"), py_level, formatter))
        except OSError as e:
            root.warning(f"[log-file-disabled] path={log_dir}/log.log err={e}")

    errors_enabled = bool(_env_flag("LOG_ERRORS"))
    if error_file is not None:
        errors_enabled = bool(error_file)
    if errors_enabled:
        try:
            root.addHandler(_rotating_handler(os.path.join(log_dir, "errors.log"), logging.ERROR, formatter))
        except OSError as e:
            root.warning(f"[log-file-disabled] path={log_dir}/errors.log err={e}")

    lib_level_name = lib_log_level or os.getenv("LIB_LOG_LEVEL")
    lib_level = getattr(logging, lib_level_name.upper(), logging.WARNING) if lib_level_name else logging.WARNING
    for name in NOISY_LIBRARIES:
        logging.getLogger(name).setLevel(lib_level)

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    # If not configured explicitly, default to INFO, system time, text format
    if not _CONFIGURED:
        configure_logging(level=os.getenv("LOG_LEVEL", "INFO"), tz=os.getenv("LOG_TZ", "system"), fmt="text")
    return logging.getLogger(name)


def is_full_enabled() -> bool:
    return _FULL_ENABLED


def set_log_levels(level: Optional[str] = None, lib_log_level: Optional[str] = None) -> None:
    """Dynamically adjust root and library logger levels without reinitializing handlers.

    Used by the config hot-reload path when LOG_LEVEL / LIB_LOG_LEVEL change.
    """
    global _FULL_ENABLED
    lvl, py_level = _normalize_level(level)
    _FULL_ENABLED = (lvl == "FULL")

    root = logging.getLogger()
    root.setLevel(py_level)
    for h in root.handlers:
        # error file keeps its own threshold
        if isinstance(h, RotatingFileHandler) and h.level >= logging.ERROR:
            continue
        h.setLevel(py_level)

    if lib_log_level:
        lib_level = getattr(logging, lib_log_level.upper(), logging.WARNING)
        for name in NOISY_LIBRARIES:
            logging.getLogger(name).setLevel(lib_level)
