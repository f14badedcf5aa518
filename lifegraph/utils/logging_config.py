"""
Logging setup shared by every engine module.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Client libraries that log every request at DEBUG/INFO
NOISY_LOGGERS = ('botocore', 'boto3', 'urllib3', 'opensearch', 'gremlinpython', 'aiohttp')


def _level(config: Optional[AppConfig]) -> int:
    if config is None:
        from .config import config as default_config
        config = default_config
    return getattr(logging, config.log_level.upper(), logging.INFO)


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """Install the stdout handler on the root logger and quiet the AWS and search clients.

    Calling it again is harmless: basicConfig leaves an already configured root alone.
    """
    logging.basicConfig(level=_level(config), format=LOG_FORMAT, handlers=[logging.StreamHandler(sys.stdout)])
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """Module logger at the configured level (usually called with __name__)."""
    logger = logging.getLogger(name)
    logger.setLevel(_level(config))
    return logger
