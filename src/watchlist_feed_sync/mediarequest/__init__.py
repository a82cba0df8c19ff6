"""Request-submission service module."""

from .client import MediaRequestClient, RequestSubmitter, classify_response

__all__ = ["MediaRequestClient", "RequestSubmitter", "classify_response"]
