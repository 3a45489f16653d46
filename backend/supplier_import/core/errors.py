"""Domain exceptions raised by the ingestion pipeline."""

from __future__ import annotations


class ImportPipelineError(Exception):
    """Base class for supplier import failures."""


class TableParseError(ImportPipelineError, ValueError):
    """Raised when an uploaded file cannot be decoded into rows."""


class InvalidMappingError(ImportPipelineError, ValueError):
    """Raised when an import is started with an incomplete column mapping."""

    def __init__(self, missing: list[str], policy: str):
        self.missing = missing
        self.policy = policy
        super().__init__(
            f"Column mapping is incomplete ({policy}): missing {', '.join(missing)}"
        )


class JobNotFoundError(ImportPipelineError, LookupError):
    """Raised when an import job or inbox record id does not exist."""

    def __init__(self, record_id: str, kind: str = "job"):
        self.record_id = record_id
        self.kind = kind
        super().__init__(f"{kind.capitalize()} {record_id} not found")


class InvalidJobTransition(ImportPipelineError):
    """Raised when a job status change breaks the queued/processing/terminal order."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from '{current}' to '{target}'")


class ChunkTransportError(ImportPipelineError):
    """Raised when a chunk call fails at the network or backend level."""

    def __init__(self, job_id: str, chunk_index: int, message: str):
        self.job_id = job_id
        self.chunk_index = chunk_index
        self.raw_message = message
        super().__init__(message)
