"""Video generation job orchestrator.

The package wires a durable job queue, a bounded worker pool, the provider
status poller and the retry policy behind a small FastAPI surface.
"""
