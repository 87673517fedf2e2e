"""Standalone sync worker: cron schedule plus manual-trigger listener.

Run with ``python -m billing_sync.worker``.
"""

import logging
import signal
import sys
from threading import Event

from billing_sync.core.config import ConfigurationError, get_settings, validate_worker_settings
from billing_sync.core.logging import configure_logging

_logger = logging.getLogger("billing_sync.worker")


def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level)
    try:
        validate_worker_settings(settings)
    except ConfigurationError as exc:
        _logger.error("%s", exc)
        return 1

    # Imported after validation: the session module binds the engine at import.
    from billing_sync.main import build_sync_service, build_worker_service

    worker = build_worker_service(settings, build_sync_service(settings))
    shutdown = Event()

    def _request_shutdown(signum, _frame) -> None:
        _logger.info("received signal=%s, shutting down", signal.Signals(signum).name)
        shutdown.set()

    signal.signal(signal.SIGINT, _request_shutdown)
    signal.signal(signal.SIGTERM, _request_shutdown)

    worker.start()
    try:
        shutdown.wait()
    finally:
        worker.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
