"""
Backend trading API integration.

Provides:
- AsyncBackendClient: Async REST + push feed client
- Retry/backoff for transient failures
"""

from tradefe_engine.backend.client import AsyncBackendClient, BackendAPIError

__all__ = ["AsyncBackendClient", "BackendAPIError"]
