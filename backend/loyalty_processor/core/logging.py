"""Logging configuration for the application"""
import logging

from loyalty_processor.core.config import Settings


def setup_logging(settings: Settings):
    """Configure logging for the application"""
    log_level = settings.LOG_LEVEL.upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Silence noisy third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


webhook_logger = logging.getLogger("webhook")
worker_logger = logging.getLogger("worker")
