"""Structured error taxonomy for conductor operations.

Every error carries the task id it concerns (when there is one), a short
machine-readable reason, and the next steps an operator or an automated
caller can take. ``to_dict`` is what the MCP tools and the JSON API return.
"""


class ConductorError(Exception):
    """Base class for failures surfaced by the conductor."""

    kind = "error"

    def __init__(
        self,
        message: str,
        task_id: str | None = None,
        reason: str | None = None,
        next_steps: list[str] | tuple[str, ...] = (),
    ):
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.reason = reason
        self.next_steps = list(next_steps)

    def to_dict(self) -> dict:
        data = {"error": self.message, "kind": self.kind}
        if self.task_id:
            data["task_id"] = self.task_id
        if self.reason:
            data["reason"] = self.reason
        if self.next_steps:
            data["next_steps"] = self.next_steps
        return data


class PreconditionError(ConductorError):
    """A precondition was not met. Nothing was changed; retry after fixing it."""

    kind = "precondition"


class ResourceConflictError(ConductorError):
    """A worktree or branch exists without a trackable agent (resume or reset)."""

    kind = "resource_conflict"


class ProcessError(ConductorError):
    """The agent process failed to start, exited non-zero or was killed."""

    kind = "process"

    def __init__(self, message: str, output: str | None = None, exit_code: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.output = output
        self.exit_code = exit_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.exit_code is not None:
            data["exit_code"] = self.exit_code
        if self.output:
            data["output"] = self.output
        return data


class MergeConflictError(ConductorError):
    """A merge produced conflicts and was aborted. The target is unchanged."""

    kind = "merge_conflict"

    def __init__(self, message: str, files: list[str], source: str, target: str, **kwargs):
        super().__init__(message, **kwargs)
        self.files = list(files)
        self.source = source
        self.target = target

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"files": self.files, "source": self.source, "target": self.target})
        return data


class CycleError(ConductorError):
    """The dependency graph contains a cycle."""

    kind = "cycle"

    def __init__(self, message: str, cycles: list[list[str]], **kwargs):
        super().__init__(message, **kwargs)
        self.cycles = [list(c) for c in cycles]

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["cycles"] = self.cycles
        return data


class ConfigError(ValueError):
    """Invalid configuration value."""
