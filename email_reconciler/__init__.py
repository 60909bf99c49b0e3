"""Email delivery reconciliation service.

Keeps local email records in line with Postmark by periodically re-reading
the provider's message and event history. The FastAPI entry point lives in
``email_reconciler.main``.
"""

__all__: list[str] = []
