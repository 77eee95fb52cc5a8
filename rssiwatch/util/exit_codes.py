"""Documented exit codes for the rssiwatch CLI.

Exit codes follow UNIX conventions:
- 0: Success
- 1: General/unspecified error
- 2: Invalid command-line arguments or usage
- 3-4: Application-specific errors
- 130: Interrupted by the operator (Ctrl+C)

Usage:
    from rssiwatch.util.exit_codes import ExitCode
    sys.exit(ExitCode.BUS_UNAVAILABLE)
"""

from __future__ import annotations


class ExitCode:
    """Exit code constants for rssiwatch processes.

    Attributes:
        SUCCESS: Normal termination, no errors.
        GENERAL_ERROR: Unspecified runtime error.
        INVALID_ARGS: Command-line argument validation failed.
        BUS_UNAVAILABLE: The MQTT broker could not be reached or refused us.
        STORE_ERROR: At least one measurement row could not be written.
        INTERRUPTED: The session was cancelled from the keyboard.
    """

    SUCCESS: int = 0
    GENERAL_ERROR: int = 1
    INVALID_ARGS: int = 2
    BUS_UNAVAILABLE: int = 3
    STORE_ERROR: int = 4
    INTERRUPTED: int = 130

    @classmethod
    def message(cls, code: int) -> str:
        """Return a human-readable message for an exit code."""
        messages = {
            cls.SUCCESS: "Success",
            cls.GENERAL_ERROR: "General error",
            cls.INVALID_ARGS: "Invalid arguments",
            cls.BUS_UNAVAILABLE: "Message bus unavailable",
            cls.STORE_ERROR: "Workbook store error",
            cls.INTERRUPTED: "Interrupted",
        }
        return messages.get(code, f"Unknown exit code {code}")
