"""
Zentralisierte Logging-Konfiguration für tile-dedistort

Stellt Console- und Datei-Logging für CLI-Läufe bereit.
"""

import logging
import sys
import os
from logging.handlers import RotatingFileHandler
from datetime import datetime
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(
    log_level=logging.INFO,
    log_dir: Optional[str] = None,
    log_prefix: str = 'tile_dedistort'
):
    """
    Logging-Setup mit konfigurierbaren Parametern

    Args:
        log_level: Logging-Level (default: INFO)
        log_dir: Verzeichnis für Logdateien, None = nur Console
        log_prefix: Präfix für Logdateien

    Returns:
        Konfigurierter Root-Logger
    """
    logger = logging.getLogger()
    logger.setLevel(log_level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    # Console Handler auf stderr, stdout gehört den JSON-Events
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    # Alte Handler entfernen
    logger.handlers.clear()
    logger.addHandler(console_handler)

    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = os.path.join(log_dir, f"{log_prefix}_{timestamp}.log")

        # File Handler mit Rotation
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10*1024*1024,  # 10 MB
            backupCount=5
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logging.getLogger('astropy').setLevel(logging.WARNING)

    return logger
