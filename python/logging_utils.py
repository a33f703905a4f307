"""
Logging helpers for the Membership Registration Service

- setup_logging: configure root handlers from the logging config section
- sanitize_for_logging: neutralize user input before it reaches a log line
"""

import re
import logging
from pathlib import Path
from typing import Optional

from config_manager import LoggingConfig

MAX_LOGGED_LENGTH = 500


def sanitize_for_logging(text: Optional[str], max_length: int = MAX_LOGGED_LENGTH) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text
        max_length: Truncate to this many characters

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:max_length]


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Configure the root logger from a LoggingConfig.

    Replaces existing root handlers, so calling it twice does not
    duplicate output.
    """
    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper(), logging.INFO)
    formatter = logging.Formatter(config.format)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if config.console or not config.file:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)
