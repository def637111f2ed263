"""Application-level exceptions.

These are business-logic errors, not HTTP errors. The presentation layer
(e.g. FastAPI routes) translates them into appropriate HTTP responses.
"""


class EmptyQueryError(ValueError):
    """Raised when a chat turn or retrieval query has no text."""


class MissingUserError(ValueError):
    """Raised when an operation is attempted without a user id."""


class EmptyContentError(ValueError):
    """Raised when a knowledge item is written without content."""


class KnowledgeStoreUnavailableError(RuntimeError):
    """Raised when the knowledge store cannot be read or written."""


class ToolParameterError(ValueError):
    """Raised when tool parameters are missing, malformed or out of range."""

    def __init__(self, tool_name: str, detail: str) -> None:
        super().__init__(f"{tool_name}: {detail}")
        self.tool_name = tool_name
        self.detail = detail


class ToolExecutionError(RuntimeError):
    """Raised when a tool fails after its parameters were accepted."""

    def __init__(self, tool_name: str, detail: str) -> None:
        super().__init__(f"{tool_name}: {detail}")
        self.tool_name = tool_name
        self.detail = detail


class CacheUnavailableError(RuntimeError):
    """Raised when the response cache cannot be read or written."""
