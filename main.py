import logging
import signal
import threading

from config import get_settings
from scheduler import SchedulerManager


def configure_logging() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def main() -> None:
    configure_logging()
    stop_event = threading.Event()

    def _handle_signal(signum, _frame):
        logging.info(f"shutdown_requested: signal={signum}")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    scheduler_manager = SchedulerManager()
    scheduler_manager.start()
    try:
        stop_event.wait()
    finally:
        scheduler_manager.stop()


if __name__ == "__main__":
    main()
