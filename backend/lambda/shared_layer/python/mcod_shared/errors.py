"""mcod_shared.errors — Exceptions shared by the lifecycle orchestrators."""

from __future__ import annotations

from typing import Optional

from botocore.exceptions import ClientError


class WorkflowFailed(RuntimeError):
    """Raised by a workflow step to end the execution in its failure state."""

    def __init__(self, error: str, cause: str, state: Optional[str] = None):
        super().__init__(f"{error}: {cause}")
        self.error = error
        self.cause = cause
        # Fail state to end in; None means the definition's failure_state.
        self.state = state


class RecordAlreadyExists(RuntimeError):
    """A conditional create found an existing record with the same key."""


class InvalidStatusTransition(RuntimeError):
    """A status update precondition failed and the record is not already there."""


def _client_error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return str(exc.response.get("Error", {}).get("Code") or "")
    return ""
