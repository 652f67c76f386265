from __future__ import annotations

import re
from collections.abc import Mapping
from hashlib import sha256

from reloader.src.models import SecretKey, SecretRef

FINGERPRINT_LENGTH = 32
_MAX_ANNOTATION_NAME = 63


def fingerprint_data(data: Mapping[str, bytes]) -> str:
    """Return a fixed-length hex fingerprint of Secret data.

    Keys are visited in sorted order, so the result does not depend on the
    iteration order of *data*.  Each field is framed as
    ``key NUL len(value) NUL value``; values are opaque bytes and may contain
    NUL themselves, so the length keeps two different mappings from encoding
    to the same byte stream.
    """
    digest = sha256()
    for key in sorted(data):
        value = data[key]
        digest.update(key.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(str(len(value)).encode("ascii"))
        digest.update(b"\x00")
        digest.update(value)
    return digest.hexdigest()[:FINGERPRINT_LENGTH]


def fingerprint(secret: SecretRef) -> str:
    return fingerprint_data(secret.data)


def fingerprint_annotation_key(prefix: str, secret_key: SecretKey, target_namespace: str) -> str:
    """Return the pod-template annotation key carrying the fingerprint of *secret_key*.

    The name part is the Secret name, qualified as ``<namespace>.<name>`` when
    the Secret lives outside the target's namespace so two same-named Secrets
    never share a key.  Names beyond the 63-character annotation limit are
    trimmed and suffixed with a short hash of the full name.
    """
    qualified = (
        secret_key.name
        if secret_key.namespace == target_namespace
        else f"{secret_key.namespace}.{secret_key.name}"
    )
    normalized = re.sub(r"[^A-Za-z0-9_.-]+", "-", qualified).strip("-.") or "secret"

    if len(normalized) > _MAX_ANNOTATION_NAME:
        suffix = sha256(qualified.encode("utf-8")).hexdigest()[:10]
        trimmed = normalized[: _MAX_ANNOTATION_NAME - len(suffix) - 1].rstrip("-.") or "secret"
        normalized = f"{trimmed}-{suffix}"

    return f"{prefix}/{normalized}"
