"""Tests for salted identifier hashing."""

from __future__ import annotations

import random
import string

from fedwatch.hashing import content_hash, salted_hash


def _random_text(rng: random.Random) -> str:
    return "".join(rng.choices(string.printable, k=rng.randint(1, 40)))


class TestSaltedHash:
    def test_hex_digest(self) -> None:
        digest = salted_hash("task-1", b"salt")
        assert digest is not None
        assert len(digest) == 64
        assert all(c in "0123456789abcdef" for c in digest)

    def test_matches_value_then_salt(self) -> None:
        assert salted_hash("abc", b"xyz") == content_hash(b"abcxyz")

    def test_empty_and_none(self) -> None:
        assert salted_hash(None, b"salt") is None
        assert salted_hash("", b"salt") is None

    def test_non_string_values_stringified(self) -> None:
        assert salted_hash(42, b"s") == salted_hash("42", b"s")

    def test_deterministic(self) -> None:
        rng = random.Random(1234)
        for _ in range(200):
            value = _random_text(rng)
            salt = rng.randbytes(32)
            assert salted_hash(value, salt) == salted_hash(value, salt)

    def test_different_salts_differ(self) -> None:
        rng = random.Random(5678)
        for _ in range(200):
            value = _random_text(rng)
            s1 = rng.randbytes(32)
            s2 = rng.randbytes(32)
            if s1 == s2:
                continue
            assert salted_hash(value, s1) != salted_hash(value, s2)

    def test_different_values_differ(self) -> None:
        rng = random.Random(91011)
        salt = rng.randbytes(32)
        seen: dict[str, str] = {}
        for _ in range(500):
            value = _random_text(rng)
            digest = salted_hash(value, salt)
            assert digest is not None
            if digest in seen:
                assert seen[digest] == value
            seen[digest] = value
