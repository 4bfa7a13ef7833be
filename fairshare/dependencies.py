"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header

from fairshare.auth import (
    FirebaseTokenVerifier,
    TokenVerifier,
    bearer_token,
    resolve_user,
)
from fairshare.config import get_settings
from fairshare.db import DbClient, InMemoryDbClient, PostgresDbClient, UserRecord
from fairshare.errors import PermissionDeniedError
from fairshare.queue import InMemoryJobQueue, JobQueue, RedisJobQueue

_db_client: DbClient | None = None
_queue_client: JobQueue | None = None
_token_verifier: TokenVerifier | None = None


def get_db_client() -> DbClient:
    """
    Return a singleton DB client so state persists across requests.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _db_client = InMemoryDbClient()
    else:
        _db_client = PostgresDbClient(settings.database_url)
    return _db_client


def get_queue_client() -> JobQueue:
    """
    Return a singleton queue client for dispatching balance jobs to workers.
    """
    global _queue_client
    if _queue_client:
        return _queue_client

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _queue_client = RedisJobQueue(
            url=settings.redis_url,
            queue_key=settings.redis_queue_key,
        )
    else:
        _queue_client = InMemoryJobQueue()
    return _queue_client


def get_token_verifier() -> TokenVerifier:
    global _token_verifier
    if _token_verifier:
        return _token_verifier

    settings = get_settings()
    _token_verifier = FirebaseTokenVerifier(
        project_id=settings.firebase_project_id,
        credentials_file=settings.firebase_credentials_file,
    )
    return _token_verifier


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    verifier: TokenVerifier = Depends(get_token_verifier),
    db: DbClient = Depends(get_db_client),
) -> UserRecord:
    identity = verifier.verify(bearer_token(authorization))
    return resolve_user(db, identity)


def require_admin(user: UserRecord = Depends(get_current_user)) -> UserRecord:
    if user.email.lower() not in get_settings().admin_emails:
        raise PermissionDeniedError("Admin access required")
    return user
