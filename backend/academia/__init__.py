"""Application package for the academic progression backend.

This package exposes the service, repository, progression and model
modules used by the FastAPI application. It is intentionally
lightweight; individual modules contain the concrete implementations
and documentation.
"""
