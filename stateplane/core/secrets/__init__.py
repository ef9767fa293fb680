"""
Secret handling — wrapper type, envelope codec, tagged serialization.

Public API::

    from stateplane.core.secrets import Secret, SecretCodec, encrypt, decrypt

    codec = SecretCodec(passphrase)
    stored = serialize({"token": Secret("abc")}, codec)
    props = deserialize(stored.value, codec)
"""

from stateplane.core.secrets.codec import (
    SCHEME_AES_GCM_V1,
    SecretCodec,
    decrypt,
    encrypt,
)
from stateplane.core.secrets.secret import Secret, secret
from stateplane.core.secrets.serde import (
    Serialized,
    deserialize,
    redact,
    serialize,
)

__all__ = [
    "SCHEME_AES_GCM_V1",
    "Secret",
    "SecretCodec",
    "Serialized",
    "decrypt",
    "deserialize",
    "encrypt",
    "redact",
    "secret",
    "serialize",
]
