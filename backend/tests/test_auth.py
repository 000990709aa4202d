"""Tests for bearer token decoding."""

from __future__ import annotations

import unittest
from datetime import timedelta

import jwt

from skillchat.auth import TokenError, bearer_from_header, create_access_token, decode_principal
from skillchat.config import Settings


class TokenTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = Settings(jwt_secret="unit-test-secret-with-enough-entropy-123", jwt_audience=None)

    def test_round_trip_returns_subject(self) -> None:
        token = create_access_token("alice", self.settings)

        self.assertEqual(decode_principal(token, self.settings), "alice")

    def test_expired_token_is_rejected(self) -> None:
        token = create_access_token("alice", self.settings, expires_in=timedelta(seconds=-5))

        with self.assertRaisesRegex(TokenError, "expired"):
            decode_principal(token, self.settings)

    def test_token_without_subject_is_rejected(self) -> None:
        token = jwt.encode({"scope": "chat"}, self.settings.jwt_secret, algorithm="HS256")

        with self.assertRaisesRegex(TokenError, "missing user ID"):
            decode_principal(token, self.settings)

    def test_wrong_secret_and_missing_token_are_rejected(self) -> None:
        foreign = jwt.encode({"sub": "alice"}, "another-secret-that-is-long-enough-0000", algorithm="HS256")

        with self.assertRaises(TokenError):
            decode_principal(foreign, self.settings)
        with self.assertRaises(TokenError):
            decode_principal(None, self.settings)

    def test_audience_is_enforced_when_configured(self) -> None:
        scoped = self.settings.model_copy(update={"jwt_audience": "skillchat"})
        token = create_access_token("bob", scoped)

        self.assertEqual(decode_principal(token, scoped), "bob")
        with self.assertRaises(TokenError):
            decode_principal(create_access_token("bob", self.settings), scoped)

    def test_bearer_from_header(self) -> None:
        self.assertEqual(bearer_from_header("Bearer abc"), "abc")
        self.assertEqual(bearer_from_header("bearer  abc "), "abc")
        self.assertIsNone(bearer_from_header("Basic abc"))
        self.assertIsNone(bearer_from_header(None))


if __name__ == "__main__":
    unittest.main()
