"""
Tests for challenge catalogue encryption, validation, loading and the
user-facing challenge view.
"""

import json

import pytest
from cryptography.fernet import Fernet

from coderunner.catalogue import (
    SALT_PREFIX,
    decrypt_catalogue,
    encrypt_catalogue,
    load_catalogue,
    parse_catalogue,
    public_challenge_view,
    validate_challenge_dict,
)
from coderunner.models import Language


def _challenge_dict(**overrides):
    data = {
        "id": "sum-two",
        "title": "Sum Two Numbers",
        "description": "Print the sum of two integers.",
        "time_limit_ms": 2000,
        "memory_limit_mb": 64,
        "xp_reward": 100,
        "coin_reward": 50,
        "is_published": True,
        "hints": ["Read the line", "Split it"],
        "code_templates": {"python": "# your code here\n"},
        "solutions": {"python": "a, b = map(int, input().split())\nprint(a + b)\n"},
        "test_cases": [
            {"id": "1", "input": "1 2", "expected_output": "3"},
            {"id": "2", "input": "7 8", "expected_output": "15", "hidden": True,
             "explanation": "larger numbers", "time_limit_ms": 500},
        ],
    }
    data.update(overrides)
    return data


DOCUMENT = {"challenges": [_challenge_dict()]}


class TestEncryption:
    """Test key- and password-based catalogue encryption."""

    def test_key_round_trip(self):
        key = Fernet.generate_key()
        blob = encrypt_catalogue(DOCUMENT, key=key)
        assert not blob.startswith(SALT_PREFIX)
        assert decrypt_catalogue(blob, key=key) == DOCUMENT

    def test_key_as_text(self):
        key = Fernet.generate_key()
        blob = encrypt_catalogue(DOCUMENT, key=key)
        assert decrypt_catalogue(blob, key=key.decode() + "\n") == DOCUMENT

    def test_password_round_trip(self):
        blob = encrypt_catalogue(DOCUMENT, password="s3cret")
        assert blob.startswith(SALT_PREFIX)
        assert decrypt_catalogue(blob, password="s3cret") == DOCUMENT

    def test_wrong_password(self):
        blob = encrypt_catalogue(DOCUMENT, password="s3cret")
        with pytest.raises(ValueError, match="wrong key or password"):
            decrypt_catalogue(blob, password="guess")

    def test_wrong_key(self):
        blob = encrypt_catalogue(DOCUMENT, key=Fernet.generate_key())
        with pytest.raises(ValueError, match="wrong key or password"):
            decrypt_catalogue(blob, key=Fernet.generate_key())

    def test_missing_secret(self):
        with pytest.raises(ValueError, match="password is required"):
            decrypt_catalogue(encrypt_catalogue(DOCUMENT, password="x"))
        with pytest.raises(ValueError, match="key is required"):
            decrypt_catalogue(encrypt_catalogue(DOCUMENT, key=Fernet.generate_key()))

    def test_exactly_one_secret(self):
        with pytest.raises(ValueError):
            encrypt_catalogue(DOCUMENT)
        with pytest.raises(ValueError):
            encrypt_catalogue(DOCUMENT, key=Fernet.generate_key(), password="x")


class TestValidation:
    """Test the challenge schema check."""

    def test_valid(self):
        assert validate_challenge_dict(_challenge_dict()) == []

    def test_missing_fields(self):
        errors = validate_challenge_dict({"id": "x"})
        assert "x: missing field 'title'" in errors
        assert "x: missing field 'test_cases'" in errors

    def test_duplicate_case_ids(self):
        data = _challenge_dict(test_cases=[
            {"id": "1", "expected_output": "a"},
            {"id": "1", "expected_output": "b"},
        ])
        assert validate_challenge_dict(data) == ["sum-two: duplicate test case id '1'"]

    def test_case_without_expected_output(self):
        data = _challenge_dict(test_cases=[{"id": "1", "input": "x"}])
        assert validate_challenge_dict(data) == ["sum-two: test case 1 has no expected_output"]

    def test_negative_limit(self):
        errors = validate_challenge_dict(_challenge_dict(time_limit_ms=-1))
        assert errors == ["sum-two: 'time_limit_ms' must be a non-negative integer"]

    def test_unknown_language(self):
        errors = validate_challenge_dict(_challenge_dict(solutions={"cobol": "..."}))
        assert errors == ["sum-two: unknown language 'cobol' in solutions"]


class TestParseAndLoad:
    """Test turning documents and files into Challenge objects."""

    def test_parse(self):
        [challenge] = parse_catalogue(DOCUMENT)
        assert challenge.id == "sum-two"
        assert challenge.is_published
        assert challenge.test_cases[1].hidden
        assert challenge.test_cases[1].time_limit_ms == 500
        assert challenge.hints == ("Read the line", "Split it")
        assert Language.PYTHON in challenge.solutions

    def test_bare_list(self):
        assert len(parse_catalogue([_challenge_dict()])) == 1

    def test_invalid_document(self):
        with pytest.raises(ValueError, match="Invalid catalogue"):
            parse_catalogue({"challenges": [{"id": "broken"}]})
        with pytest.raises(ValueError, match="list of challenges"):
            parse_catalogue({"challenges": "nope"})

    def test_load_json(self, tmp_path):
        path = tmp_path / "challenges.json"
        path.write_text(json.dumps(DOCUMENT), encoding="utf-8")
        assert [c.id for c in load_catalogue(path)] == ["sum-two"]

    def test_load_bad_json(self, tmp_path):
        path = tmp_path / "challenges.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid JSON"):
            load_catalogue(path)

    def test_load_encrypted(self, tmp_path):
        key = Fernet.generate_key()
        path = tmp_path / "challenges.enc"
        path.write_bytes(encrypt_catalogue(DOCUMENT, key=key))
        assert [c.id for c in load_catalogue(path, key=key)] == ["sum-two"]

    def test_load_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_catalogue(tmp_path / "nope.json")


class TestPublicView:
    """Test what a user is shown of a challenge."""

    def test_before_completion(self):
        [challenge] = parse_catalogue(DOCUMENT)
        view = public_challenge_view(challenge)

        assert view["test_cases"][0]["input"] == "1 2"
        assert view["test_cases"][1] == {"id": "2", "hidden": True, "expected_output": "(hidden)"}
        assert view["hints"] == ["Read the line"]
        assert view["code_templates"] == {"python": "# your code here\n"}
        assert "solutions" not in view

    def test_after_completion(self):
        [challenge] = parse_catalogue(DOCUMENT)
        view = public_challenge_view(challenge, completed=True)

        assert view["test_cases"][1]["input"] == "7 8"
        assert view["test_cases"][1]["explanation"] == "larger numbers"
        assert view["hints"] == ["Read the line", "Split it"]
        assert "solutions" not in view
