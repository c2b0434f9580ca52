"""
Package logger.

All modules in multifit log through :data:`logger`.  Nothing is printed
unless the application configures logging itself or calls
:func:`setup_console_logging`.
"""

import logging

LOGLEVEL = dict(
    debug=logging.DEBUG,
    info=logging.INFO,
    warn=logging.WARNING,
    warning=logging.WARNING,
    error=logging.ERROR,
    critical=logging.CRITICAL,
)

_CONSOLE_FORMATTER = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
_CONSOLE_HANDLER = None

logger = logging.getLogger("multifit")
logger.addHandler(logging.NullHandler())


def setup_console_logging(level="info"):
    """
    Send multifit log messages at *level* and above to the console.

    *level* is one of the names in :data:`LOGLEVEL`.  Calling this a second
    time changes the level of the existing handler rather than adding a
    new one.
    """
    global _CONSOLE_HANDLER
    if level not in LOGLEVEL:
        raise ValueError("unknown log level %r; use %s" % (level, "|".join(sorted(LOGLEVEL))))
    if _CONSOLE_HANDLER is None:
        _CONSOLE_HANDLER = logging.StreamHandler()
        _CONSOLE_HANDLER.setFormatter(_CONSOLE_FORMATTER)
        logger.addHandler(_CONSOLE_HANDLER)
    _CONSOLE_HANDLER.setLevel(LOGLEVEL[level])
    if logger.level == logging.NOTSET or logger.level > LOGLEVEL[level]:
        logger.setLevel(LOGLEVEL[level])
    return _CONSOLE_HANDLER
