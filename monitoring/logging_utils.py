import logging
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Third-party loggers that are too chatty at INFO.
QUIET_LOGGERS = ("websockets", "aiohttp.access", "uvicorn.access")


def resolve_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    if level is None or level == "":
        return default
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: Union[int, str, None] = None, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Called once from the entrypoint. ``level`` accepts a logging constant or a
    name such as ``"DEBUG"``; when omitted, ``monitoring.log_level`` from the
    loaded config is used. Later calls are ignored once handlers exist.
    """
    if logging.getLogger().handlers:
        return

    if level is None:
        from config import config
        level = config.section('monitoring').get('log_level')

    logging.basicConfig(level=resolve_level(level), format=log_format or DEFAULT_FORMAT)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
