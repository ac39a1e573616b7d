"""
Structured logging configuration with update ID and environment labels
"""
import logging
import sys
from contextvars import ContextVar
from typing import Optional

# Context variable for the inbound update being processed
update_id_var: ContextVar[Optional[int]] = ContextVar('update_id', default=None)


def get_update_id() -> Optional[int]:
    """Get current update ID from context"""
    return update_id_var.get()


class StructuredFormatter(logging.Formatter):
    """Custom formatter that includes update ID and environment"""
    
    def __init__(self, env: str = "dev", fmt: str = None, datefmt: str = None):
        self.env = env
        if fmt is None:
            fmt = "%(asctime)s [%(env)s] [%(update_id)s] %(levelname)-8s %(name)s: %(message)s"
        if datefmt is None:
            datefmt = "%Y-%m-%d %H:%M:%S"
        super().__init__(fmt=fmt, datefmt=datefmt)
    
    def format(self, record: logging.LogRecord) -> str:
        update_id = get_update_id()
        record.update_id = update_id if update_id is not None else "-"
        record.env = self.env
        return super().format(record)


def setup_logging(env: str = "dev", log_level: str = "INFO"):
    """
    Set up structured logging with update ID and environment labels
    
    Args:
        env: Environment name (dev, test, staging, prod)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    
    formatter = StructuredFormatter(env=env)
    
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
    
    # Access log stays visible; client and ORM chatter does not
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    
    return root_logger
