"""External delivery provider clients."""
from email_reconciler.integrations.postmark import PostmarkAPIError, PostmarkClient, PostmarkConfigError

__all__ = ["PostmarkClient", "PostmarkAPIError", "PostmarkConfigError"]
