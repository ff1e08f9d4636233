"""Backend utilities for the PDF compress/merge tools.

This package intentionally keeps FastAPI route handlers thin:
- job registry, download tokens and TTL expiry (reaper)
- zip bundles of several finished jobs
- Ghostscript compression and PDF merging
- usage counters, review aggregates and rate limiting

Security note:
Download tokens are bearer credentials (128 random bits). Anyone holding a job
id and its token can download the file until it expires, so never log tokens
or expose filesystem paths in responses.
"""
