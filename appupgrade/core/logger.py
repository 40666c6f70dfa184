"""Unified logging for appupgrade with console and file output."""
import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

# stdout is reserved for command results (e.g. the container name from create)
console = Console(stderr=True)

# Log file configuration
LOG_DIR = Path("/var/log/appupgrade")
LOG_FILE = LOG_DIR / "appupgrade.log"

# Track if file logging has been set up
_file_logging_configured = False


def setup_file_logging(log_file: str = None, verbose: bool = False):
    """Set up file logging for upgrade operations.

    Args:
        log_file: Path to log file (defaults to /var/log/appupgrade/appupgrade.log)
        verbose: Enable debug-level logging

    Note:
        Creates log directory if it doesn't exist.
        Falls back to /tmp if /var/log/appupgrade is not writable.
    """
    global _file_logging_configured

    if _file_logging_configured:
        return

    # Explicit --log-file wins over the default location
    target_log_file = Path(log_file) if log_file else LOG_FILE

    # Try to create log directory
    try:
        target_log_file.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        # Fall back to /tmp if /var/log is not writable
        target_log_file = Path("/tmp/appupgrade.log")
        target_log_file.parent.mkdir(parents=True, exist_ok=True)

    # Attach to the package logger; module loggers propagate to it
    root_logger = logging.getLogger("appupgrade")
    file_handler = logging.FileHandler(target_log_file)
    file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Timestamped lines for post-mortem of failed upgrades
    file_formatter = logging.Formatter(
        "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler.setFormatter(file_formatter)
    root_logger.addHandler(file_handler)
    # Package logger level gates the file handler too
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    _file_logging_configured = True

    # First line of every run marks where its log starts
    root_logger.info(f"appupgrade logging initialized: {target_log_file}")


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger instance with console output.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger with a Rich handler writing to stderr

    Note:
        File logging must be enabled separately via setup_file_logging()
    """
    logger = logging.getLogger(name)

    # get_logger is called once per module import; keep a single handler
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=console, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return logger
