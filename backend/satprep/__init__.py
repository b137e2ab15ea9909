"""Application package for the SAT practice backend.

This package exposes the service, repository and model modules used by
the FastAPI application: a filterable question bank, answer grading,
attempt recording and per-user progress. Individual modules contain the
concrete implementations and documentation.
"""
