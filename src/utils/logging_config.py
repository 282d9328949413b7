import logging
import sys

from src.config import settings

def configure_logging(level: str = None):
    """Configure logging for the application."""
    root = logging.getLogger()
    if any(getattr(h, "_hma_monitor", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler._hma_monitor = True
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    handler.setFormatter(formatter)
    root.addHandler(handler)
    root.setLevel((level or settings.LOG_LEVEL).upper())

# Make sure the function is available for import
__all__ = ['configure_logging']
