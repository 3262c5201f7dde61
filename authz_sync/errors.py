"""
Error taxonomy for sync and remediation runs.

Every error here is fatal for the run that raised it: it is logged with
context by the component that detected it and re-raised to the caller.
"""
from typing import Dict, Optional


class SyncError(Exception):
    """Base class for pipeline failures."""
    pass


class SourceUnavailable(SyncError):
    """Extraction from a source system failed (network, auth, schema)."""
    
    def __init__(self, source: str, step: str, cause: BaseException):
        self.source = source
        self.step = step
        self.cause = cause
        super().__init__(f"{source}: {step} failed: {cause}")


class PartialWriteFailure(SyncError):
    """A staging load, dedup or merge write failed mid-step."""
    
    def __init__(
        self,
        source: str,
        step: str,
        cause: BaseException,
        counts_so_far: Optional[Dict[str, int]] = None,
    ):
        self.source = source
        self.step = step
        self.cause = cause
        self.counts_so_far = dict(counts_so_far or {})
        super().__init__(f"{source}: {step} failed: {cause}")


class RemediationFailure(SyncError):
    """A remediation delete or mark failed; nothing was marked remediated."""
    
    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"remediation {step} failed: {cause}")


class RunTimeout(SyncError):
    """A run exceeded its configured wall-clock budget."""
    
    def __init__(self, job: str, seconds: float):
        self.job = job
        self.seconds = seconds
        super().__init__(f"{job} exceeded wall-clock budget of {seconds:.0f}s")
