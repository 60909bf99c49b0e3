"""Concrete reconciliation tasks, one module per provider."""
from email_reconciler.reconciliation.tasks.postmark import PostmarkReconciliationTask

__all__ = ["PostmarkReconciliationTask"]
