"""identity_etl.passwords

Credential hashing and generated-value policy for identity records.

The default hasher writes the ASP.NET Core Identity v3 format so imported
users can sign in through an Identity-based application:

    0x01 | prf (uint32 BE) | iterations (uint32 BE) | salt len (uint32 BE)
         | salt | PBKDF2 subkey            → base64
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import struct
import uuid
from typing import Any, Callable, Mapping, Protocol

IdGenerator = Callable[[], str]

FORMAT_MARKER_V3 = 0x01
PRF_HMACSHA256 = 1
DEFAULT_ITERATIONS = 100_000
SALT_SIZE = 16
SUBKEY_SIZE = 32

_PRF_DIGESTS = {0: "sha1", 1: "sha256", 2: "sha512"}
_HEADER = struct.Struct(">III")


def new_id() -> str:
    """Default generator for ids and concurrency/security stamps."""
    return str(uuid.uuid4())


class PasswordHasher(Protocol):
    def hash_password(self, user: Mapping[str, Any], password: str) -> str:
        ...

    def verify(self, user: Mapping[str, Any], hashed: str | None, password: str) -> bool:
        ...


class IdentityV3PasswordHasher:
    def __init__(
        self,
        iterations: int = DEFAULT_ITERATIONS,
        salt_source: Callable[[int], bytes] = os.urandom,
    ) -> None:
        self.iterations = iterations
        self._salt_source = salt_source

    def hash_password(self, user: Mapping[str, Any], password: str) -> str:
        salt = self._salt_source(SALT_SIZE)
        subkey = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt, self.iterations, SUBKEY_SIZE
        )
        payload = (
            bytes([FORMAT_MARKER_V3])
            + _HEADER.pack(PRF_HMACSHA256, self.iterations, len(salt))
            + salt
            + subkey
        )
        return base64.b64encode(payload).decode("ascii")

    def verify(self, user: Mapping[str, Any], hashed: str | None, password: str) -> bool:
        """True when `hashed` is a v3 hash of `password`; False for anything else."""
        if not hashed:
            return False
        try:
            payload = base64.b64decode(hashed, validate=True)
        except (binascii.Error, ValueError):
            return False
        if len(payload) < 1 + _HEADER.size or payload[0] != FORMAT_MARKER_V3:
            return False

        prf, iterations, salt_len = _HEADER.unpack_from(payload, 1)
        digest = _PRF_DIGESTS.get(prf)
        body = payload[1 + _HEADER.size:]
        if digest is None or salt_len < 16 or len(body) <= salt_len:
            return False
        salt, expected = body[:salt_len], body[salt_len:]
        actual = hashlib.pbkdf2_hmac(
            digest, password.encode("utf-8"), salt, iterations, len(expected)
        )
        return hmac.compare_digest(actual, expected)
