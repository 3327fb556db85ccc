"""Error taxonomy shared by the store, the turn engine and the REST layer.

Validation, lookup and lease errors are raised before any state changes and
map to 4xx responses. Model and persistence errors abort a turn. Tool errors
never leave the invocation they belong to.
"""

from __future__ import annotations


class ColloquyError(Exception):
    """Base class for all application errors."""


class ValidationError(ColloquyError):
    """Input rejected at an operation boundary."""


class NotFoundError(ColloquyError):
    """A chat, message or agent does not exist (or is not visible to the caller)."""


class ChatBusyError(ColloquyError):
    """Another turn currently holds the chat's write lease."""

    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Chat {chat_id} has a turn in progress")
        self.chat_id = chat_id


class ConfirmationRequiredError(ColloquyError):
    """A destructive edit/retry reaches past the latest exchange and was not confirmed."""

    def __init__(self, will_delete: int) -> None:
        super().__init__(
            f"This will permanently remove {will_delete} message(s). Repeat with confirm=true to proceed."
        )
        self.will_delete = will_delete


class ModelCallError(ColloquyError):
    """The upstream model call failed; the turn is aborted."""


class PersistenceError(ColloquyError):
    """The store could not commit a fully generated turn."""


class ToolExecutionError(ColloquyError):
    """A tool capability failed. Recorded on the invocation, never fatal to the turn."""


class IllegalTransitionError(ColloquyError):
    """A tool invocation was asked to skip or reverse a lifecycle state."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal tool state transition: {current} -> {target}")
        self.current = current
        self.target = target
