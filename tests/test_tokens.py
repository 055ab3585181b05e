"""Tests for verification token encryption and parsing."""

import base64

from tutorqueue.core.tokens import issue_token, parse_roles, read_token, token_cipher
from tutorqueue.db.models import InternalRole

SECRET = "test-secret"


class TestReadToken:
    def test_issued_token_reads_back(self):
        token = issue_token(SECRET, "g1", "tu1", "m1", [InternalRole.VERIFIED, InternalRole.TUTOR])
        data = read_token(SECRET, token)
        assert data is not None
        assert data.server_id == "g1"
        assert data.version_id == "1"
        assert (data.tu_id, data.moodle_id) == ("tu1", "m1")
        assert data.roles == [InternalRole.VERIFIED, InternalRole.TUTOR]

    def test_ids_are_not_readable_from_token(self):
        token = issue_token(SECRET, "g1", "tu-4711", "moodle-0815", [InternalRole.VERIFIED])
        decoded = base64.urlsafe_b64decode(token.encode())
        for text in (token.encode(), decoded):
            assert b"tu-4711" not in text
            assert b"moodle-0815" not in text

    def test_surrounding_whitespace_is_ignored(self):
        token = issue_token(SECRET, "g1", "tu1", "m1", [InternalRole.VERIFIED])
        assert read_token(SECRET, f"  {token}\n") is not None

    def test_wrong_secret(self):
        token = issue_token(SECRET, "g1", "tu1", "m1", [InternalRole.VERIFIED])
        assert read_token("other-secret", token) is None

    def test_garbage(self):
        assert read_token(SECRET, "not-a-token") is None
        assert read_token(SECRET, "") is None
        assert read_token(SECRET, "täst") is None

    def test_malformed_payload(self):
        cipher = token_cipher(SECRET)
        assert read_token(SECRET, cipher.encrypt(b"g1|1|tu1").decode()) is None

    def test_token_without_known_roles(self):
        cipher = token_cipher(SECRET)
        assert read_token(SECRET, cipher.encrypt(b"g1|1|tu1|m1|wizard").decode()) is None


class TestParseRoles:
    def test_case_and_unknown_roles(self):
        assert parse_roles("Verified, TUTOR,wizard,") == [
            InternalRole.VERIFIED,
            InternalRole.TUTOR,
        ]

    def test_empty(self):
        assert parse_roles("") == []
