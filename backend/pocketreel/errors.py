from __future__ import annotations


class PipelineError(RuntimeError):
    pass


class RemoteSubmissionError(PipelineError):
    """The vendor rejected a submission outright (auth, malformed input, quota)."""


class JobNotFoundError(PipelineError, LookupError):
    pass


class JobConflictError(PipelineError):
    """Another invocation changed the job since it was read."""


class InvalidJobStateError(PipelineError):
    pass
