from __future__ import annotations

import re

# DNS-1123 subdomain for object names, DNS-1123 label for namespaces.
_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class MalformedDeclarationError(ValueError):
    """Raised when a dependency declaration cannot be parsed into Secret references."""


def _validate(reference: str, namespace: str, name: str) -> None:
    if len(namespace) > 63 or not _NAMESPACE_PATTERN.match(namespace):
        raise MalformedDeclarationError(
            f"invalid namespace {namespace!r} in secret reference {reference!r}"
        )
    if len(name) > 253 or not _NAME_PATTERN.match(name):
        raise MalformedDeclarationError(f"invalid secret name {name!r} in reference {reference!r}")


def parse_declaration(value: str, default_namespace: str) -> list[tuple[str, str]]:
    """Parse a dependency declaration into ``(namespace, name)`` pairs.

    The value is a comma-separated list where each item is either ``name``
    (resolved in *default_namespace*, the target's own namespace) or
    ``namespace/name``.  Whitespace around items is ignored, as are empty
    items, so ``"db-creds, , shared/tls"`` declares two Secrets.  Duplicates
    are returned once, in first-seen order.

    Raises :class:`MalformedDeclarationError` when the declaration names no
    Secret at all or when any item is not a valid reference; a partially
    valid declaration is rejected as a whole rather than silently narrowed.
    """
    references: list[tuple[str, str]] = []
    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue
        if item.count("/") > 1:
            raise MalformedDeclarationError(f"too many '/' in secret reference {item!r}")
        namespace, separator, name = item.rpartition("/")
        if not separator:
            namespace = default_namespace
        _validate(item, namespace, name)
        pair = (namespace, name)
        if pair not in references:
            references.append(pair)

    if not references:
        raise MalformedDeclarationError(f"declaration {value!r} names no secrets")
    return references
