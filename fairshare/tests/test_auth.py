import unittest
from unittest.mock import patch

from firebase_admin import auth as firebase_auth

from fairshare.auth import (
    FirebaseIdentity,
    FirebaseTokenVerifier,
    StaticTokenVerifier,
    bearer_token,
    resolve_user,
)
from fairshare.db import InMemoryDbClient
from fairshare.errors import AuthenticationError


class BearerTokenTests(unittest.TestCase):
    def test_extracts_token(self):
        self.assertEqual(bearer_token("Bearer abc.def"), "abc.def")
        self.assertEqual(bearer_token("bearer  abc "), "abc")

    def test_rejects_bad_headers(self):
        for header in (None, "", "Basic abc", "Bearer", "Bearer   "):
            with self.subTest(header=header):
                with self.assertRaises(AuthenticationError):
                    bearer_token(header)


class StaticTokenVerifierTests(unittest.TestCase):
    def test_known_and_unknown_tokens(self):
        identity = FirebaseIdentity(uid="u1", email="a@example.com")
        verifier = StaticTokenVerifier()
        verifier.add("token", identity)
        self.assertEqual(verifier.verify("token"), identity)
        with self.assertRaises(AuthenticationError):
            verifier.verify("other")


class FirebaseTokenVerifierTests(unittest.TestCase):
    def setUp(self):
        patcher = patch("fairshare.auth.firebase_admin.initialize_app")
        self.initialize_app = patcher.start()
        self.addCleanup(patcher.stop)
        self.verifier = FirebaseTokenVerifier(project_id="fairshare-test")

    @patch("fairshare.auth.firebase_auth.verify_id_token")
    def test_verify_returns_identity(self, verify_id_token):
        verify_id_token.return_value = {
            "uid": "firebase-1",
            "email": "alice@example.com",
            "name": "Alice",
            "picture": "https://example.com/a.png",
        }
        identity = self.verifier.verify("token")
        self.assertEqual(identity.uid, "firebase-1")
        self.assertEqual(identity.picture, "https://example.com/a.png")

        self.verifier.verify("token")
        self.initialize_app.assert_called_once_with(
            None, {"projectId": "fairshare-test"}, name="fairshare"
        )
        verify_id_token.assert_called_with("token", app=self.initialize_app.return_value)

    @patch("fairshare.auth.firebase_auth.verify_id_token")
    def test_invalid_token(self, verify_id_token):
        verify_id_token.side_effect = firebase_auth.InvalidIdTokenError("bad token")
        with self.assertLogs("fairshare.auth", level="WARNING"):
            with self.assertRaises(AuthenticationError):
                self.verifier.verify("token")

    @patch("fairshare.auth.firebase_auth.verify_id_token")
    def test_token_without_email(self, verify_id_token):
        verify_id_token.return_value = {"uid": "firebase-2"}
        with self.assertRaises(AuthenticationError):
            self.verifier.verify("token")


class ResolveUserTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()

    def test_creates_user_on_first_sign_in(self):
        identity = FirebaseIdentity(uid="uid-1", email="Jane.Doe@Example.com")
        user = resolve_user(self.db, identity)
        self.assertEqual(user.email, "jane.doe@example.com")
        self.assertEqual(user.name, "jane.doe")
        self.assertEqual(user.firebase_uid, "uid-1")
        self.assertEqual(resolve_user(self.db, identity).id, user.id)

    def test_links_existing_email(self):
        existing = self.db.create_user(email="jane@example.com", name="Jane")
        user = resolve_user(self.db, FirebaseIdentity(uid="uid-2", email="jane@example.com"))
        self.assertEqual(user.id, existing.id)
        self.assertEqual(user.firebase_uid, "uid-2")

    def test_usernames_stay_unique(self):
        first = resolve_user(self.db, FirebaseIdentity(uid="a", email="sam@one.com", name="Sam"))
        second = resolve_user(self.db, FirebaseIdentity(uid="b", email="sam@two.com", name="Sam"))
        self.assertEqual(first.username, "sam")
        self.assertEqual(second.username, "sam2")


if __name__ == "__main__":
    unittest.main()
