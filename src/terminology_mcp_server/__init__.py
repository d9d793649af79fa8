"""MCP gateway for medical terminologies (ICD-11, LOINC, RxNorm, MeSH, SNOMED CT).

Upstream requests are governed by a per-upstream token bucket, a retry
executor with exponential backoff and jitter, and a shared TTL cache.
"""

__version__ = "0.1.0"
