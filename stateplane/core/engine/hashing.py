"""
Input hashing — a stable digest of a declaration's props.

Props are serialized in fingerprint mode (secrets become keyed
digests, outputs of other resources are inlined by value) and dumped
as canonical JSON: sorted keys, no whitespace. The same props hash to
the same value on every run with the same key material.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from stateplane.core.secrets.codec import SecretCodec
from stateplane.core.secrets.serde import Serialized, serialize

HASH_PREFIX = "sha256:"


def canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_value(value: Any) -> str:
    """Digest of an already JSON-safe value."""
    return HASH_PREFIX + hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def fingerprint_props(props: dict[str, Any], codec: SecretCodec) -> tuple[str, Serialized]:
    """Hash *props* and return the digest with the fingerprint walk.

    The walk also carries the paths of any ResourceOutputs found in
    the props, which the runtime records as dependencies.
    """
    walked = serialize(props, codec, root="props", fingerprint=True)
    return hash_value(walked.value), walked
