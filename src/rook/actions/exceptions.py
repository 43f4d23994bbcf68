"""Action exceptions."""

from typing import Any


class ActionFailed(Exception):
    """Raised by a handler when the desired state could not be reached.

    Attributes:
        msg: Human-readable error detail
        output: Captured output to report with the failure
        details: Extra fields for logging

    Example:
        raise ActionFailed("dest is a directory", dest="/etc/x")
    """

    def __init__(self, msg: str, output: str | None = None, **details: Any) -> None:
        super().__init__(msg)
        self.msg = msg
        self.output = output
        self.details = details

    def __str__(self) -> str:
        return self.msg
