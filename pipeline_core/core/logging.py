import logging

from pipeline_core.core.config import LOG_LEVEL

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = LOG_LEVEL):
    """Configures root logging once for the API process and the background workers."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
