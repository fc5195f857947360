"""
Logging Helper - Simple custom logger for the device panel.

Provides a straightforward logger shared by every component of the coordinator.
Clean, explicit, and easy to extend without fighting library limitations.
"""

import sys
import traceback

# Global log level
_log_level = 20  # INFO

# Log level constants
DEBUG = 10
INFO = 20
WARNING = 30
ERROR = 40
CRITICAL = 50
TESTING = 60  # Suppresses all logs except test output

_LEVEL_NAMES = {10: "DEBUG", 20: "INFO", 30: "WARNING", 40: "ERROR", 50: "CRITICAL", 60: "TESTING"}

# Default log file applied to loggers created without an explicit one
_default_log_file: str | None = None

# File write error suppression (global to prevent spam across all loggers)
_LOGGED_FILE_ERROR = False


class PanelLogger:
    """
    Simple logger for the device panel coordinator.

    No handler propagation, just formatted output on stdout and an
    optional append-only log file.

    Format: [LEVEL: ModuleName] message

    Example:
        log = logger('devpanel.wifi')
        log.info("Connected")  # Output: [INFO: Wifi] Connected
    """

    def __init__(self, name: str, log_file: str | None = None) -> None:
        """
        Initialize logger with a hierarchical name.

        Args:
            name: Logger name (e.g., 'devpanel.wifi', 'devpanel.ota')
            log_file: Optional file path to write logs to (in addition to stdout)
        """
        self.name = name if name else "devpanel"
        self._log_file = log_file

        # 'devpanel.wifi' -> 'Wifi', 'devpanel' -> 'Main'
        parts = self.name.split(".")
        if len(parts) > 1:
            mod = parts[-1]
        elif parts[0] == "devpanel":
            mod = "main"
        else:
            mod = parts[0]
        self.module = mod[0].upper() + mod[1:] if mod else "Unknown"

    @property
    def log_file(self) -> str | None:
        """Effective log file: explicit one, else the configured default."""
        return self._log_file if self._log_file is not None else _default_log_file

    def critical(self, msg: str, exc_info: bool = False) -> None:
        """Log critical message."""
        self._log(CRITICAL, msg, exc_info=exc_info)

    def debug(self, msg: str, exc_info: bool = False) -> None:
        """Log a debug message."""
        self._log(DEBUG, msg, exc_info=exc_info)

    def error(self, msg: str, exc_info: bool = False) -> None:
        """Log error message."""
        self._log(ERROR, msg, exc_info=exc_info)

    def info(self, msg: str, exc_info: bool = False) -> None:
        """Log info message."""
        self._log(INFO, msg, exc_info=exc_info)

    def testing(self, msg: str) -> None:
        """
        Log test message at TESTING level.

        When global log level is set to TESTING, only testing() messages
        are displayed.
        """
        self._log(TESTING, msg)

    def warning(self, msg: str, exc_info: bool = False) -> None:
        """Log warning message."""
        self._log(WARNING, msg, exc_info=exc_info)

    def _log(self, level: int, msg: str, exc_info: bool = False) -> None:
        global _LOGGED_FILE_ERROR
        if level < _log_level:
            return

        if level == TESTING:
            formatted_msg = msg
        else:
            level_name = _LEVEL_NAMES.get(level, "UNKNOWN")
            formatted_msg = f"[{level_name}: {self.module}] {msg}"

        print(formatted_msg)

        log_file = self.log_file
        if log_file is not None:
            try:
                with open(log_file, "a") as f:
                    f.write(formatted_msg + "\n")
                    f.flush()
                _LOGGED_FILE_ERROR = False
            except OSError as e:
                # Only report filesystem errors once to avoid spam
                if not _LOGGED_FILE_ERROR:
                    print(f"! Log file write failed: {e}")
                    _LOGGED_FILE_ERROR = True

        if exc_info:
            exc_type, exc_value, exc_tb = sys.exc_info()
            if exc_type is not None:
                traceback.print_exception(exc_type, exc_value, exc_tb)
                sys.stdout.flush()


def configure_logging(log_level_str: str = "INFO", log_file: str | None = None) -> None:
    """
    Configure global logging level and default log file.

    Call this once at startup; applies to every logger created via logger().

    Args:
        log_level_str: DEBUG, INFO, WARNING, ERROR, CRITICAL or TESTING.
                      Defaults to INFO if invalid.
        log_file: Optional file that every logger without its own file appends to
    """
    global _log_level, _default_log_file

    levels = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR,
        "CRITICAL": CRITICAL,
        "TESTING": TESTING,
    }

    _log_level = levels.get(log_level_str.upper(), INFO)
    _default_log_file = log_file or None


def logger(name: str = "devpanel", log_file: str | None = None) -> PanelLogger:
    """
    Get a logger instance for the given name.

    Example:
        logger("devpanel.ota").info("Upload started")
    """
    return PanelLogger(name, log_file=log_file)
