"""Exception taxonomy shared by the queue, run driver and scheduler."""

from __future__ import annotations


class ProspectorError(Exception):
    """Base class for all prospector errors."""


class StorageUnavailable(ProspectorError):
    """Backing table is missing or the database rejected the write."""


class JobHandlerFailure(ProspectorError):
    """A queue handler raised while processing a job.

    Recorded as job status ``failed``; never propagated past the consumer loop.
    """

    def __init__(self, job_id: str, cause: BaseException) -> None:
        self.job_id = job_id
        self.cause = cause
        super().__init__(f"{type(cause).__name__}: {cause}")


class RunFailed(ProspectorError):
    """An assistant run reached a terminal failure state."""

    def __init__(self, status: str, reason: str | None = None) -> None:
        self.status = status
        self.reason = reason
        super().__init__(f"Run {status}: {reason or 'no reason given'}")


class SubmissionFailure(ProspectorError):
    """Submitting tool outputs back to a run failed."""

    def __init__(self, thread_id: str, run_id: str, cause: BaseException) -> None:
        self.thread_id = thread_id
        self.run_id = run_id
        self.cause = cause
        super().__init__(f"Could not submit tool outputs for run {run_id}: {cause}")


class UnknownTool(ProspectorError):
    """The tool executor has no handler registered under this name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ScheduleResolutionFailure(ProspectorError):
    """A schedule input could not be turned into a valid cron expression."""

    def __init__(self, schedule_input: str, cron: str | None = None) -> None:
        self.schedule_input = schedule_input
        self.cron = cron
        detail = f" (interpreter returned {cron!r})" if cron is not None else ""
        super().__init__(f"Cannot resolve schedule {schedule_input!r}{detail}")


class AssistantApiError(ProspectorError):
    """The assistant API returned an error or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class WebToolError(ProspectorError):
    """A web search or page fetch failed."""
