"""CloudEvents-driven GitHub bots with scoped, single-use credentials.

This package provides:
- A typed event router and FastAPI receiver for GitHub CloudEvents
- Octo STS token exchange with per-invocation credential brokers
- An idempotent, credential-scoped GitHub API client
- Reliable CloudEvent publication with bounded retry
- NDJSON framing and an on-disk event recorder
"""
