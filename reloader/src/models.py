from __future__ import annotations

import base64
import binascii
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, NamedTuple

from reloader.src.declaration import MalformedDeclarationError, parse_declaration


class SecretKey(NamedTuple):
    """Identity of a Secret, and the reconciliation key used by the work queue."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class TargetKey(NamedTuple):
    namespace: str
    name: str
    kind: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class SecretRef:
    """Read-only view of a Secret as last observed through the watch."""

    key: SecretKey
    resource_version: str | None
    data: Mapping[str, bytes] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class TargetRef:
    """Read-only view of a workload that may depend on Secrets.

    Equality and hashing only consider ``key`` so a set of targets is a set of
    identities, regardless of which resourceVersion each entry was read at.
    ``declaration_error`` is set when the dependency annotation is present but
    cannot be parsed; such a target has no dependencies.
    """

    key: TargetKey
    resource_version: str | None = field(default=None, compare=False)
    template_annotations: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({}), compare=False
    )
    dependencies: frozenset[SecretKey] = field(default_factory=frozenset, compare=False)
    declaration_error: str | None = field(default=None, compare=False)

    def depends_on(self, secret_key: SecretKey) -> bool:
        return secret_key in self.dependencies


def _string_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in raw.items() if isinstance(k, str)}


def _decode_secret_value(value: str) -> bytes:
    """Decode a base64 ``data`` value; undecodable input is hashed as raw text."""
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return value.encode("utf-8")


def object_identity(obj: Any) -> tuple[str | None, str | None, str | None]:
    """Return ``(namespace, name, resourceVersion)`` of an API object, if present."""
    metadata = getattr(obj, "metadata", None)
    if metadata is None:
        return None, None, None
    return (
        getattr(metadata, "namespace", None),
        getattr(metadata, "name", None),
        getattr(metadata, "resource_version", None),
    )


def secret_from_object(obj: Any) -> SecretRef | None:
    """Convert a ``V1Secret`` (or a look-alike) into a :class:`SecretRef`.

    ``string_data`` is merged over the decoded ``data`` the way the API server
    merges it on write.  Returns ``None`` for objects without namespace/name.
    """
    namespace, name, resource_version = object_identity(obj)
    if not namespace or not name:
        return None

    data = {
        key: _decode_secret_value(value)
        for key, value in _string_map(getattr(obj, "data", None)).items()
    }
    for key, value in _string_map(getattr(obj, "string_data", None)).items():
        data[key] = value.encode("utf-8")

    return SecretRef(
        key=SecretKey(namespace, name),
        resource_version=resource_version,
        data=MappingProxyType(data),
    )


def template_annotations_of(kind: str, obj: Any) -> dict[str, str]:
    """Extract pod template annotations from a workload object safely."""
    if kind == "PodTemplate":
        template = getattr(obj, "template", None)
    else:
        template = getattr(getattr(obj, "spec", None), "template", None)
    metadata = getattr(template, "metadata", None)
    return _string_map(getattr(metadata, "annotations", None))


def target_from_object(kind: str, obj: Any, dependency_annotation: str) -> TargetRef | None:
    """Convert a workload object into a :class:`TargetRef`.

    The dependency declaration is parsed here, at the boundary, so nothing
    downstream ever sees the raw annotation string.
    """
    namespace, name, resource_version = object_identity(obj)
    if not namespace or not name:
        return None

    annotations = _string_map(getattr(obj.metadata, "annotations", None))
    dependencies: frozenset[SecretKey] = frozenset()
    declaration_error: str | None = None
    raw_declaration = annotations.get(dependency_annotation)
    if raw_declaration is not None:
        try:
            dependencies = frozenset(
                SecretKey(ref_namespace, ref_name)
                for ref_namespace, ref_name in parse_declaration(raw_declaration, namespace)
            )
        except MalformedDeclarationError as exc:
            declaration_error = str(exc)

    return TargetRef(
        key=TargetKey(namespace, name, kind),
        resource_version=resource_version,
        template_annotations=MappingProxyType(template_annotations_of(kind, obj)),
        dependencies=dependencies,
        declaration_error=declaration_error,
    )
