from __future__ import annotations

import random
import re
from hashlib import sha256
from types import SimpleNamespace

from reloader.src.fingerprint import (
    FINGERPRINT_LENGTH,
    fingerprint,
    fingerprint_annotation_key,
    fingerprint_data,
)
from reloader.src.models import SecretKey, secret_from_object
from reloader.tests.fakes import make_secret


def test_fingerprint_is_independent_of_field_order() -> None:
    forward = {"user": b"a", "pass": b"b", "host": b"db.internal"}
    backward = dict(reversed(list(forward.items())))

    assert list(forward) != list(backward)
    assert fingerprint_data(forward) == fingerprint_data(backward)


def test_fingerprint_is_a_fixed_length_annotation_safe_string() -> None:
    value = fingerprint_data({"user": b"a"})

    assert len(value) == FINGERPRINT_LENGTH
    assert re.fullmatch(r"[0-9a-f]+", value)
    assert fingerprint_data({}) != value
    assert len(fingerprint_data({})) == FINGERPRINT_LENGTH


def test_fingerprint_encoding_is_pinned() -> None:
    # Changing the framing would re-roll every workload that already carries a fingerprint.
    expected = sha256(b"pass\x001\x00b" + b"user\x001\x00a").hexdigest()[:FINGERPRINT_LENGTH]

    assert fingerprint_data({"user": b"a", "pass": b"b"}) == expected


def test_single_byte_changes_always_change_the_fingerprint() -> None:
    rng = random.Random(20261018)
    for _ in range(200):
        data = {
            f"key-{index}": bytes(rng.randrange(256) for _ in range(rng.randrange(1, 48)))
            for index in range(rng.randrange(1, 6))
        }
        original = fingerprint_data(data)

        key = rng.choice(sorted(data))
        value = bytearray(data[key])
        position = rng.randrange(len(value))
        value[position] = (value[position] + rng.randrange(1, 256)) % 256
        mutated = dict(data, **{key: bytes(value)})

        assert fingerprint_data(mutated) != original


def test_adding_or_removing_a_field_changes_the_fingerprint() -> None:
    base = {"user": b"a", "pass": b"b"}

    assert fingerprint_data(dict(base, extra=b"")) != fingerprint_data(base)
    assert fingerprint_data({"user": b"a"}) != fingerprint_data(base)


def test_values_containing_separators_cannot_alias_other_mappings() -> None:
    merged = {"a": b"x\x00b\x00y"}
    split = {"a": b"x", "b": b"y"}

    assert fingerprint_data(merged) != fingerprint_data(split)


def test_fingerprint_of_secret_uses_decoded_data() -> None:
    secret = secret_from_object(make_secret("db-creds", {"user": "a", "pass": "b"}))

    assert secret is not None
    assert fingerprint(secret) == fingerprint_data({"user": b"a", "pass": b"b"})


def test_string_data_overrides_data_before_hashing() -> None:
    obj = make_secret("db-creds", {"user": "a", "pass": "b"})
    obj.string_data = {"pass": "c"}

    secret = secret_from_object(obj)

    assert secret is not None
    assert dict(secret.data) == {"user": b"a", "pass": b"c"}


def test_secret_without_identity_is_not_converted() -> None:
    assert secret_from_object(SimpleNamespace(metadata=None, data={})) is None


def test_annotation_key_uses_secret_name_in_same_namespace() -> None:
    key = fingerprint_annotation_key("secret-fingerprint", SecretKey("ns", "db-creds"), "ns")

    assert key == "secret-fingerprint/db-creds"


def test_annotation_key_qualifies_secret_from_other_namespace() -> None:
    key = fingerprint_annotation_key("secret-fingerprint", SecretKey("shared", "tls"), "ns")

    assert key == "secret-fingerprint/shared.tls"


def test_annotation_key_trims_long_names_with_hash_suffix() -> None:
    long_name = "a" * 100
    key = fingerprint_annotation_key("secret-fingerprint", SecretKey("ns", long_name), "ns")
    other = fingerprint_annotation_key("secret-fingerprint", SecretKey("ns", long_name + "b"), "ns")

    prefix, _, name = key.partition("/")
    assert prefix == "secret-fingerprint"
    assert len(name) <= 63
    assert re.fullmatch(r"[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?", name)
    assert key != other
