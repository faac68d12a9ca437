import logging, sys

from healguard.config import settings

# Third-party loggers that drown the engine's own output at DEBUG.
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "telegram")


def resolve_level(env: str, override: str | None = None) -> int:
    if override:
        level = logging.getLevelName(override.upper())
        if isinstance(level, int):
            return level
    return logging.DEBUG if env == "dev" else logging.INFO


def setup_logging():
    logger = logging.getLogger("healguard")
    if logger.handlers:
        return logger
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(resolve_level(settings.ENV, settings.LOG_LEVEL))
    logger.propagate = False
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger
