"""
Error taxonomy shared by the tool adapter, the store and the stage drivers.

Schema failures of tool payloads are plain pydantic ValidationErrors and are
handled where the payload is parsed.
"""


class PipelineError(Exception):
    pass


class ToolInvocationError(PipelineError):
    """An external scanner failed to spawn, timed out or exited abnormally."""

    def __init__(self, tool: str, reason: str, retryable: bool = True):
        super().__init__(f"{tool}: {reason}")
        self.tool = tool
        self.reason = reason
        self.retryable = retryable


class PersistenceError(PipelineError):
    """A store read or write failed. Fatal for the enclosing job run."""
