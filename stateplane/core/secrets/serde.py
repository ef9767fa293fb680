"""
Tagged serialization — props and outputs to and from their stored form.

The stored form is plain JSON. Values that JSON cannot express are
tagged with a single-key object:

    Secret            → {"@secret": <envelope>}
    datetime          → {"@date": "2026-10-19T08:00:00+00:00"}
    ResourceOutput    → its attributes, by value (recorded as a dependency)

Secrets are encrypted on the way in and decrypted on the way out. For
input hashing the same walk runs in fingerprint mode, where a secret
becomes a keyed digest instead of a (randomly salted) ciphertext.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from stateplane.core.errors import DecryptionError
from stateplane.core.models.declaration import ResourceOutput
from stateplane.core.secrets.codec import SecretCodec, is_envelope
from stateplane.core.secrets.secret import Secret

SECRET_TAG = "@secret"
DATE_TAG = "@date"


@dataclass
class Serialized:
    """Result of a serialize walk."""

    value: Any
    secret_fields: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)


def _join(path: str, key: str | int) -> str:
    if isinstance(key, int):
        return f"{path}[{key}]"
    return f"{path}.{key}" if path else key


def serialize(
    value: Any,
    codec: SecretCodec,
    *,
    root: str = "",
    fingerprint: bool = False,
) -> Serialized:
    """Walk *value* and produce its JSON-safe stored form.

    Args:
        value: Props or output to serialize.
        codec: Codec bound to the run's key material.
        root: Path prefix used when reporting secret field locations.
        fingerprint: Replace secrets with keyed digests (for hashing).

    Raises:
        SecretError: A Secret is present but the codec has no key.
        TypeError: A value has no stored representation.
    """
    result = Serialized(value=None)
    result.value = _walk(value, root, codec, fingerprint, result)
    return result


def _walk(value: Any, path: str, codec: SecretCodec, fingerprint: bool, out: Serialized) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    if isinstance(value, Secret):
        plaintext = json.dumps(value.get_secret_value(), sort_keys=True)
        out.secret_fields.append(path)
        if fingerprint:
            return {SECRET_TAG: codec.fingerprint(plaintext)}
        return {SECRET_TAG: codec.encrypt(plaintext)}

    if isinstance(value, ResourceOutput):
        if value.path not in out.dependencies:
            out.dependencies.append(value.path)
        return _walk(value.attributes, path, codec, fingerprint, out)

    if isinstance(value, Enum):
        return _walk(value.value, path, codec, fingerprint, out)

    if isinstance(value, datetime):
        return {DATE_TAG: value.isoformat()}

    if isinstance(value, BaseModel):
        return _walk(value.model_dump(), path, codec, fingerprint, out)

    if isinstance(value, Mapping):
        return {
            str(k): _walk(v, _join(path, str(k)), codec, fingerprint, out)
            for k, v in value.items()
        }

    if isinstance(value, (list, tuple)):
        return [_walk(v, _join(path, i), codec, fingerprint, out) for i, v in enumerate(value)]

    raise TypeError(f"Cannot serialize value of type {type(value).__name__} at '{path or '<root>'}'")


def deserialize(value: Any, codec: SecretCodec) -> Any:
    """Inverse of ``serialize``: decrypt secrets and restore tagged values.

    Raises:
        DecryptionError: An envelope cannot be decrypted with the codec's key.
    """
    if isinstance(value, list):
        return [deserialize(v, codec) for v in value]

    if isinstance(value, dict):
        if len(value) == 1 and SECRET_TAG in value:
            envelope = value[SECRET_TAG]
            if not is_envelope(envelope):
                raise DecryptionError("Stored secret is not an encrypted envelope")
            plaintext = codec.decrypt(envelope)
            try:
                return Secret(json.loads(plaintext))
            except json.JSONDecodeError as e:
                raise DecryptionError("Decrypted secret is not valid JSON") from e
        if len(value) == 1 and DATE_TAG in value:
            return datetime.fromisoformat(value[DATE_TAG])
        return {k: deserialize(v, codec) for k, v in value.items()}

    return value


def redact(value: Any) -> Any:
    """Stored form with every secret replaced by a placeholder.

    For display only. Needs no key material.
    """
    if isinstance(value, list):
        return [redact(v) for v in value]
    if isinstance(value, dict):
        if len(value) == 1 and SECRET_TAG in value:
            envelope = value[SECRET_TAG]
            scheme = envelope.get("scheme", "?") if isinstance(envelope, dict) else "?"
            return f"<secret:{scheme}>"
        return {k: redact(v) for k, v in value.items()}
    return value
