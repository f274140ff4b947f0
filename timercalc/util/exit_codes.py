"""Documented exit codes for the timercalc CLI.

Exit codes follow UNIX conventions:
- 0: Success (run ended by cancellation)
- 1: General/unspecified error
- 2: Invalid command-line arguments or usage
- 3-4: Application-specific errors

Usage:
    from timercalc.util.exit_codes import ExitCode
    sys.exit(ExitCode.CONFIG_ERROR)
"""

from __future__ import annotations


class ExitCode:
    """Exit code constants for timercalc processes.

    Attributes:
        SUCCESS: Run was canceled after completing cleanly.
        GENERAL_ERROR: An unrecoverable error ended the run.
        INVALID_ARGS: Command-line argument validation failed.
        CONFIG_ERROR: The settings document is missing or invalid.
        STORE_ERROR: The time-series store could not be opened.
    """

    SUCCESS: int = 0
    GENERAL_ERROR: int = 1
    INVALID_ARGS: int = 2
    CONFIG_ERROR: int = 3
    STORE_ERROR: int = 4

    @classmethod
    def message(cls, code: int) -> str:
        """Return a human-readable message for an exit code."""
        messages = {
            cls.SUCCESS: "Success",
            cls.GENERAL_ERROR: "General error",
            cls.INVALID_ARGS: "Invalid arguments",
            cls.CONFIG_ERROR: "Configuration error",
            cls.STORE_ERROR: "Store error",
        }
        return messages.get(code, f"Unknown exit code {code}")
