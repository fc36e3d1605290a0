"""
Adapters package for the Cloaking Gateway.

Contains the HTTP client for the upstream cloaking API. The adapter
encapsulates:

- Base URL, API key and the PHP-style form body
- Retry policy for transient failures
- Error handling that maps to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .cloaking_client import CloakingApiClient
from .form_encoding import encode_form

__all__ = [
    "CloakingApiClient",
    "encode_form",
]
