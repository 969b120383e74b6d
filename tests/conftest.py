"""Shared fixtures for chunkcrypt tests."""

from __future__ import annotations

import pytest

from chunkcrypt import Keypair


KEY_ONE = "0" * 63 + "1"
KEY_ONE_ADDRESS = "0x7e5f4552091a69125d5dfcb7b8c2659029395bdf"
OTHER_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


class RecordingCipher:
    """Deterministic stand-in cipher: prefixes each chunk with a fixed marker."""

    def __init__(self, overhead: int = 4) -> None:
        self.overhead = overhead
        self.seen: list[bytes] = []

    def encrypt(self, public_key: bytes, plaintext: bytes) -> bytes:
        self.seen.append(plaintext)
        return b"#" * self.overhead + plaintext

    def decrypt(self, private_key: str, envelope: bytes) -> bytes:
        self.seen.append(envelope)
        return envelope[self.overhead:]


@pytest.fixture(scope="session")
def keypair() -> Keypair:
    return Keypair.from_hex(KEY_ONE)


@pytest.fixture(scope="session")
def other_keypair() -> Keypair:
    return Keypair.from_hex(OTHER_KEY)


@pytest.fixture
def recording_cipher() -> RecordingCipher:
    return RecordingCipher()
