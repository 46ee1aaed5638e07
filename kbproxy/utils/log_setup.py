#!/usr/bin/env python3
"""Logger wiring shared by the supervisor, the proxy and the CLI."""
import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_logger(name: str, log_file: Optional[Path] = None, console: bool = True, stream=None,
               level: int = logging.INFO) -> logging.Logger:
    """Return a named logger, attaching handlers only the first time it is requested.

    Args:
        name: Logger name (e.g. 'kbproxy.supervisor.proxy')
        log_file: Optional file that receives a copy of every record
        console: Whether to also emit records on the console
        stream: Console stream (stderr when omitted)
        level: Logging level applied to the logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as exc:
            print(f"Failed to open log file {log_file}: {exc}")

    if console or not logger.handlers:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False
    return logger
