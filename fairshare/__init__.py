"""
FairShare backend package.

This package provides a FastAPI application for splitting shared expenses
within groups, with Postgres and in-memory storage, Firebase authentication
and a Redis-backed worker for balance recalculation.
"""
