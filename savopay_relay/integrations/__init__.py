"""External payment provider integrations."""
from .forumpay_client import ForumPayClient, ProviderError

__all__ = ["ForumPayClient", "ProviderError"]
