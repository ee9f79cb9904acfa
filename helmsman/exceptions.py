"""Custom exceptions for Helmsman."""


class HelmsmanError(Exception):
    """Base exception for Helmsman."""

    pass


class ConfigurationError(HelmsmanError):
    """Configuration-related errors."""

    pass


class LLMError(HelmsmanError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StreamInterruptedError(LLMError):
    """Provider stream failed part way through a turn."""

    def __init__(self, message: str, partial_text: str = ""):
        super().__init__(message)
        self.partial_text = partial_text


class ToolError(HelmsmanError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class AskError(HelmsmanError):
    """Errors raised while waiting on the operator."""

    pass


class AskIgnoredError(AskError):
    """The prompt was provisional or superseded by a newer prompt."""

    def __init__(self, token: int | None = None):
        super().__init__("Current ask promise was ignored")
        self.token = token


class TaskAbortedError(AskError):
    """The owning task was aborted while work was in flight."""

    def __init__(self, task_id: str = ""):
        super().__init__(f"Task {task_id} aborted" if task_id else "Task aborted")
        self.task_id = task_id


class HistoryError(HelmsmanError):
    """Conversation history could not be mutated."""

    pass


class TaskError(HelmsmanError):
    """Task lifecycle errors."""

    pass


class TaskCreationError(TaskError):
    """Task was constructed without a task or saved history."""

    pass


class TaskIdCollisionError(TaskError):
    """A task with this id is already active or stored."""

    def __init__(self, task_id: str):
        super().__init__(f"Task id already in use: {task_id}")
        self.task_id = task_id


class StorageError(HelmsmanError):
    """Persistence errors."""

    pass
