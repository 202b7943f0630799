import logging
import os


def _log_level(name):
    level = logging.getLevelName(name.upper())
    # getLevelName returns a string for names it doesn't know.
    if isinstance(level, int):
        return level
    return logging.INFO


LOG_LEVEL = _log_level(os.environ.get('PROFCORE_LOG_LEVEL', 'INFO'))

# Logs go to stderr unless this is set.
LOG_FILE = os.environ.get('PROFCORE_LOG_FILE') or None

# Seconds to wait for a remote profile before giving up.
FETCH_TIMEOUT = float(os.environ.get('PROFCORE_FETCH_TIMEOUT', '30'))

SCREENSHOT_WORKERS = int(os.environ.get('PROFCORE_SCREENSHOT_WORKERS', '4'))
