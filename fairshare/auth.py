"""
Firebase ID token verification.

Clients send ``Authorization: Bearer <firebase id token>``. A verifier turns
the token into a `FirebaseIdentity`; `resolve_user` maps that identity onto a
FairShare user, linking by email or creating the user on first sign-in.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

import firebase_admin
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials

from fairshare.db import DbClient, UserRecord, username_from_email
from fairshare.errors import AuthenticationError

logger = logging.getLogger(__name__)

FIREBASE_APP_NAME = "fairshare"


@dataclass(frozen=True)
class FirebaseIdentity:
    uid: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None


class TokenVerifier(Protocol):
    def verify(self, token: str) -> FirebaseIdentity:
        ...


class FirebaseTokenVerifier:
    """Verifies ID tokens with the Firebase Admin SDK."""

    def __init__(
        self,
        project_id: Optional[str] = None,
        credentials_file: Optional[str] = None,
    ):
        self.project_id = project_id
        self.credentials_file = credentials_file
        self._app: Optional[firebase_admin.App] = None
        self._lock = threading.Lock()

    def _get_app(self) -> firebase_admin.App:
        with self._lock:
            if self._app is None:
                cred = (
                    credentials.Certificate(self.credentials_file)
                    if self.credentials_file
                    else None
                )
                options = {"projectId": self.project_id} if self.project_id else None
                self._app = firebase_admin.initialize_app(
                    cred, options, name=FIREBASE_APP_NAME
                )
            return self._app

    def verify(self, token: str) -> FirebaseIdentity:
        try:
            claims = firebase_auth.verify_id_token(token, app=self._get_app())
        except (
            ValueError,
            firebase_auth.InvalidIdTokenError,
            firebase_auth.CertificateFetchError,
            firebase_auth.UserDisabledError,
        ) as exc:
            logger.warning("Rejected Firebase token: %s", exc)
            raise AuthenticationError("Invalid or expired token") from exc

        email = claims.get("email")
        if not email:
            raise AuthenticationError("Token does not carry an email address")
        return FirebaseIdentity(
            uid=claims["uid"],
            email=email,
            name=claims.get("name"),
            picture=claims.get("picture"),
        )


class StaticTokenVerifier:
    """Token -> identity map for local development and tests."""

    def __init__(self, tokens: Optional[dict[str, FirebaseIdentity]] = None):
        self.tokens: dict[str, FirebaseIdentity] = dict(tokens or {})

    def add(self, token: str, identity: FirebaseIdentity) -> None:
        self.tokens[token] = identity

    def verify(self, token: str) -> FirebaseIdentity:
        identity = self.tokens.get(token)
        if identity is None:
            raise AuthenticationError("Invalid or expired token")
        return identity


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")
    return token.strip()


def resolve_user(db: DbClient, identity: FirebaseIdentity) -> UserRecord:
    user = db.get_user_by_firebase_uid(identity.uid)
    if user:
        return user

    user = db.get_user_by_email(identity.email)
    if user:
        logger.info("Linking Firebase uid %s to user %s", identity.uid, user.id)
        return db.update_user(user.id, firebase_uid=identity.uid)

    user = db.create_user(
        email=identity.email,
        name=identity.name or username_from_email(identity.email),
        firebase_uid=identity.uid,
        avatar_url=identity.picture,
    )
    logger.info("Created user %s for Firebase uid %s", user.id, identity.uid)
    return user
