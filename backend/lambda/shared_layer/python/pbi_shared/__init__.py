"""pbi_shared — Shared utilities for the PBI intake Lambda functions.

Provides:
    - HTTP response helpers with CORS
    - Request body reading with base64 decoding and a size cap
    - Function-key authentication (header or query string)
    - Secrets Manager client singleton
"""

__version__ = "1.0.0"
