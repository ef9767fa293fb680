"""
Tests for secrets — wrapper type, envelope codec, tagged serialization.
"""

import copy
import json
from datetime import UTC, datetime

import pytest

from stateplane.core.errors import DecryptionError, SecretError
from stateplane.core.models.declaration import ResourceOutput
from stateplane.core.secrets import (
    SCHEME_AES_GCM_V1,
    Secret,
    SecretCodec,
    decrypt,
    deserialize,
    encrypt,
    redact,
    secret,
    serialize,
)

from tests.conftest import TEST_ITERATIONS

KEY = "k1-passphrase"


# ── Secret wrapper ───────────────────────────────────────────────────


class TestSecret:
    def test_masked(self):
        s = Secret("hunter2")
        assert "hunter2" not in repr(s)
        assert "hunter2" not in str(s)
        assert "hunter2" not in f"{s}"
        assert s.get_secret_value() == "hunter2"

    def test_equality(self):
        assert Secret("a") == Secret("a")
        assert Secret("a") != Secret("b")
        assert Secret("a") != "a"

    def test_rewrap_does_not_nest(self):
        assert Secret(Secret("x")).get_secret_value() == "x"

    def test_shorthand_and_copy(self):
        s = secret({"user": "u"})
        assert copy.deepcopy(s) is s
        assert {s: 1}[Secret({"user": "u"})] == 1


# ── Stateless codec ──────────────────────────────────────────────────


class TestEncryptDecrypt:
    @pytest.mark.parametrize("plaintext", ["", "hunter2", "ünïcødé ✓", json.dumps({"a": [1, 2]})])
    def test_roundtrip(self, plaintext):
        envelope = encrypt(plaintext, KEY, TEST_ITERATIONS)
        assert decrypt(envelope, KEY) == plaintext

    def test_envelope_layout(self):
        envelope = encrypt("x", KEY, TEST_ITERATIONS)
        assert envelope["scheme"] == SCHEME_AES_GCM_V1
        assert set(envelope) == {"scheme", "ciphertext", "nonce", "salt", "iterations"}
        assert envelope["iterations"] == TEST_ITERATIONS

    def test_wrong_key_fails(self):
        envelope = encrypt("hunter2", KEY, TEST_ITERATIONS)
        with pytest.raises(DecryptionError, match="wrong key"):
            decrypt(envelope, "k2-passphrase")

    def test_fresh_nonce_each_time(self):
        a = encrypt("same", KEY, TEST_ITERATIONS)
        b = encrypt("same", KEY, TEST_ITERATIONS)
        assert a["ciphertext"] != b["ciphertext"]
        assert a["nonce"] != b["nonce"]

    def test_tampered_ciphertext(self):
        envelope = encrypt("hunter2", KEY, TEST_ITERATIONS)
        envelope["ciphertext"] = encrypt("other", KEY, TEST_ITERATIONS)["ciphertext"]
        with pytest.raises(DecryptionError):
            decrypt(envelope, KEY)

    @pytest.mark.parametrize("envelope", [
        "not a dict",
        {"scheme": SCHEME_AES_GCM_V1},
        {"scheme": "rot13", "ciphertext": "", "nonce": "", "salt": ""},
        {"scheme": SCHEME_AES_GCM_V1, "ciphertext": "***", "nonce": "AAAA", "salt": "AAAA"},
    ])
    def test_malformed_envelope(self, envelope):
        with pytest.raises(DecryptionError):
            decrypt(envelope, KEY)

    def test_missing_key(self):
        with pytest.raises(SecretError):
            encrypt("x", "")
        with pytest.raises(DecryptionError):
            decrypt(encrypt("x", KEY, TEST_ITERATIONS), "")


# ── Run-bound codec ──────────────────────────────────────────────────


class TestSecretCodec:
    def test_roundtrip_across_instances(self):
        writer = SecretCodec(KEY, TEST_ITERATIONS)
        reader = SecretCodec(KEY, TEST_ITERATIONS)
        assert reader.decrypt(writer.encrypt("hunter2")) == "hunter2"

    def test_interoperates_with_stateless_api(self):
        codec = SecretCodec(KEY, TEST_ITERATIONS)
        assert decrypt(codec.encrypt("x"), KEY) == "x"
        assert codec.decrypt(encrypt("y", KEY, TEST_ITERATIONS)) == "y"

    def test_fingerprint_deterministic_and_keyed(self):
        a = SecretCodec(KEY, TEST_ITERATIONS)
        b = SecretCodec(KEY, TEST_ITERATIONS)
        other = SecretCodec("k2-passphrase", TEST_ITERATIONS)

        assert a.fingerprint("hunter2") == b.fingerprint("hunter2")
        assert a.fingerprint("hunter2") != a.fingerprint("hunter3")
        assert a.fingerprint("hunter2") != other.fingerprint("hunter2")
        assert a.fingerprint("hunter2").startswith("hmac-sha256:")
        assert "hunter2" not in a.fingerprint("hunter2")

    def test_no_key(self):
        codec = SecretCodec(None)
        assert not codec.has_key
        with pytest.raises(SecretError):
            codec.encrypt("x")
        with pytest.raises(SecretError):
            codec.fingerprint("x")
        with pytest.raises(DecryptionError):
            codec.decrypt(encrypt("x", KEY, TEST_ITERATIONS))


# ── Tagged serialization ─────────────────────────────────────────────


class TestSerde:
    def test_nested_secrets_roundtrip(self, codec):
        value = {
            "db": {"password": Secret("hunter2"), "port": 5432},
            "tokens": [Secret("t0"), "plain", Secret({"k": "v"})],
        }

        stored = serialize(value, codec, root="props")

        assert stored.secret_fields == ["props.db.password", "props.tokens[0]", "props.tokens[2]"]
        raw = json.dumps(stored.value)
        assert "hunter2" not in raw
        assert "t0" not in raw
        assert deserialize(stored.value, codec) == value

    def test_secret_tag_shape(self, codec):
        stored = serialize({"p": Secret("x")}, codec)
        assert list(stored.value["p"]) == ["@secret"]
        assert stored.value["p"]["@secret"]["scheme"] == SCHEME_AES_GCM_V1

    def test_dates_tagged(self, codec):
        when = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)
        stored = serialize({"created": when}, codec)
        assert stored.value == {"created": {"@date": "2026-10-19T08:00:00+00:00"}}
        assert deserialize(stored.value, codec) == {"created": when}

    def test_resource_output_inlined_as_dependency(self, codec):
        upstream = ResourceOutput("shop/dev/Queue/jobs", "Queue", "jobs", {"arn": "a"})
        stored = serialize({"queue": upstream, "again": [upstream]}, codec)
        assert stored.value == {"queue": {"arn": "a"}, "again": [{"arn": "a"}]}
        assert stored.dependencies == ["shop/dev/Queue/jobs"]

    def test_tuples_become_lists(self, codec):
        assert serialize({"t": (1, 2)}, codec).value == {"t": [1, 2]}

    def test_unserializable(self, codec):
        with pytest.raises(TypeError, match="object"):
            serialize({"x": object()}, codec)

    def test_fingerprint_mode_is_stable(self, codec):
        a = serialize({"p": Secret("x")}, codec, fingerprint=True).value
        b = serialize({"p": Secret("x")}, codec, fingerprint=True).value
        assert a == b
        assert a["p"]["@secret"].startswith("hmac-sha256:")

    def test_wrong_key_on_deserialize(self, codec):
        stored = serialize({"p": Secret("x")}, codec)
        with pytest.raises(DecryptionError):
            deserialize(stored.value, SecretCodec("wrong", TEST_ITERATIONS))

    def test_tag_without_envelope(self, codec):
        with pytest.raises(DecryptionError):
            deserialize({"@secret": "hmac-sha256:abc"}, codec)

    def test_redact(self, codec):
        stored = serialize({"p": Secret("x"), "n": [Secret(1)], "plain": 1}, codec)
        assert redact(stored.value) == {
            "p": f"<secret:{SCHEME_AES_GCM_V1}>",
            "n": [f"<secret:{SCHEME_AES_GCM_V1}>"],
            "plain": 1,
        }
