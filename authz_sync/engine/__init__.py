"""
Engine modules for sync and remediation logic.

- SyncOrchestrator: Extract -> Load -> Dedup -> Merge per source
- RemediationEngine: Review revocation and termination remediation
- TerminationRemediator: Termination batch on its own
"""
from authz_sync.engine.orchestrator import SyncOrchestrator
from authz_sync.engine.remediation import RemediationEngine
from authz_sync.engine.remediator import ReviewRemediator
from authz_sync.engine.termination import TerminationRemediator

__all__ = ["SyncOrchestrator", "RemediationEngine", "ReviewRemediator", "TerminationRemediator"]
