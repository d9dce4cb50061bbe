"""
Launch reconciliation and integrity audit
"""
from flywheel.services.launches.reconciler import ReconcileStats, reconcile
from flywheel.services.launches.audit import IntegrityReport, audit_integrity

__all__ = ["ReconcileStats", "reconcile", "IntegrityReport", "audit_integrity"]
