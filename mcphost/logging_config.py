import logging
import os
import sys
from pathlib import Path
from typing import Optional, Union

from pythonjsonlogger import jsonlogger


def setup_logging(log_file: Optional[Union[str, Path]] = None):
    """
    Configures the root logger to output structured JSON logs.
    Log level can be set via the LOG_LEVEL environment variable.

    Args:
        log_file: If given, logs are appended to this file.
                  Otherwise they go to stderr, leaving stdout free for output
                  and for the stdio pipes of child processes.
    """
    log_level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)

    log = logging.getLogger()
    log.setLevel(log_level)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)

    # Define the fields to include in the JSON output.
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s"
    )

    handler.setFormatter(formatter)

    # Avoid adding duplicate handlers
    if not log.handlers:
        log.addHandler(handler)
