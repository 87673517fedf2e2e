import logging

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_HANDLER_NAME = "billing_sync.stream"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    resolved_level = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved_level, int):
        resolved_level = logging.INFO
    root.setLevel(resolved_level)

    if any(handler.get_name() == _HANDLER_NAME for handler in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)

    # apscheduler logs every job submission at INFO.
    if resolved_level > logging.DEBUG:
        logging.getLogger("apscheduler").setLevel(logging.WARNING)
