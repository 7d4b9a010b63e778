"""
Batch media generation pipeline.

Exposes reusable primitives for pre/post-processing images, driving a
rate-limited generation service through a retry/backoff state machine,
persisting finished artifacts, and serving the FastAPI application.
"""
