"""Custom exceptions for Hearth."""


class HearthError(Exception):
    """Base exception for Hearth."""

    pass


class ConfigurationError(HearthError):
    """Configuration-related errors."""

    pass


class LLMError(HearthError):
    """Backend-related errors."""

    pass


class LLMAPIError(LLMError):
    """Backend API errors (unreachable, rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class UnsupportedProviderError(LLMError, ConfigurationError):
    """No backend implementation for the requested provider name."""

    def __init__(self, provider: str):
        super().__init__(f"Provider '{provider}' not supported. Use 'ollama' or 'openai'.")
        self.provider = provider


class ToolError(HearthError):
    """Tool invocation errors. `code` becomes the failed result's error code."""

    code = "execution_failed"

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(tool_name, f"Tool '{tool_name}' failed: {message}")


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    code = "not_found"

    def __init__(self, tool_name: str):
        super().__init__(tool_name, f"Tool not found: {tool_name}")


class ToolDisabledError(ToolError):
    """Tool was auto-disabled after repeated failures."""

    code = "disabled"

    def __init__(self, tool_name: str, error_count: int):
        super().__init__(
            tool_name,
            f"Tool '{tool_name}' is disabled after {error_count} consecutive failures",
        )
        self.error_count = error_count


class ToolBlockedError(ToolError):
    """Tool execution blocked by policy."""

    code = "blocked"

    def __init__(self, tool_name: str, reason: str):
        super().__init__(tool_name, f"Tool '{tool_name}' blocked: {reason}")
        self.reason = reason


class ToolValidationError(ToolError):
    """Arguments did not match the tool's schema."""

    code = "invalid_arguments"

    def __init__(self, tool_name: str, message: str):
        super().__init__(tool_name, f"Tool '{tool_name}' rejected arguments: {message}")


class ToolTimeoutError(ToolError):
    """Tool did not finish in time."""

    code = "timeout"

    def __init__(self, tool_name: str, timeout_seconds: float):
        label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
        super().__init__(tool_name, f"Tool '{tool_name}' timed out after {label}s")
        self.timeout_seconds = timeout_seconds


class MemoryBlockError(HearthError):
    """Core memory block errors."""

    code = "memory_error"

    def __init__(self, label: str, message: str):
        super().__init__(message)
        self.label = label


class BlockNotFoundError(MemoryBlockError):
    """No block with this label."""

    code = "block_not_found"

    def __init__(self, label: str):
        super().__init__(label, f"Memory block not found: {label}")


class BlockReadOnlyError(MemoryBlockError):
    """Block is protected against mutation."""

    code = "block_read_only"

    def __init__(self, label: str):
        super().__init__(label, f"Memory block is read-only: {label}")


class BlockOverLimitError(MemoryBlockError):
    """Mutation would push the block past its limit."""

    code = "block_over_limit"

    def __init__(self, label: str, size: int, limit: int):
        super().__init__(label, f"Memory block '{label}' would hold {size} chars (limit {limit})")
        self.size = size
        self.limit = limit


class CheckpointNotFoundError(HearthError):
    """Checkpoint not found."""

    def __init__(self, checkpoint_id: str):
        super().__init__(f"Checkpoint not found: {checkpoint_id}")
        self.checkpoint_id = checkpoint_id


class VersionNotFoundError(HearthError):
    """Memory version not found."""

    def __init__(self, version_id: str):
        super().__init__(f"Memory version not found: {version_id}")
        self.version_id = version_id


class RecordNotFoundError(HearthError):
    """Task/workflow/entry record not found."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} not found: {record_id}")
        self.kind = kind
        self.record_id = record_id


class ScheduleError(HearthError):
    """Unparseable schedule text."""

    pass


class HTTPError(HearthError):
    """Request rejected at the transport edge."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class MalformedRequestError(HTTPError):
    """Request could not be framed or decoded."""

    def __init__(self, message: str):
        super().__init__(400, message)


class PayloadTooLargeError(HTTPError):
    """Declared body exceeds the configured maximum."""

    def __init__(self, size: int, limit: int):
        super().__init__(413, f"Request body too large: {size} bytes (max {limit})")
        self.size = size
        self.limit = limit
