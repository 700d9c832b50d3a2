"""
Storybank API package.

This package provides a FastAPI application exposing the
Level -> Month -> Story -> Question hierarchy, with an in-memory store for
development and tests and a SQLAlchemy-backed store for production.
"""
