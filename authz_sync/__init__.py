"""
Authorization Sync and Remediation.

Batch jobs that reconcile role assignments from the directory service,
the security-administration system and the legacy role system into the
canonical authorization store, and revoke access rejected in review or
held by terminated employees.

Usage:
    python -m authz_sync sync --all
    python -m authz_sync sync --source SC --as-of 2026-10-19T02:00:00
    python -m authz_sync remediate
    python -m authz_sync status --run-id <run_id>
"""
__version__ = "1.0.0"
__author__ = "IAM Platform Team"
