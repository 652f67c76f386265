from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass

SUPPORTED_TARGET_KINDS = ("Deployment", "StatefulSet", "DaemonSet", "PodTemplate")

_DNS_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
_ANNOTATION_NAME = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")


class ConfigError(ValueError):
    """Raised when the reloader configuration is invalid."""


@dataclass(frozen=True)
class ReloaderConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        namespace: Namespace to watch; empty means every namespace.
        secret_selector: Label selector applied to the Secret watch.
        target_selector: Label selector applied to every target-kind watch.
        target_kinds: Workload kinds that may carry a dependency declaration.
        dependency_annotation: Annotation key holding the declaration.
        fingerprint_prefix: Prefix of the pod-template fingerprint annotation.
        workers: Number of reconcile worker threads.
        retry_base_delay_seconds: First delay applied to a failing key.
        retry_max_delay_seconds: Upper bound of the per-key backoff.
        resync_period_seconds: Interval of the full re-enqueue; ``0`` disables it.
        watch_timeout_seconds: Server-side timeout of each watch stream.
        shutdown_timeout_seconds: How long to wait for workers on shutdown.
        health_port: Port of the health/metrics server.
        health_enabled: Whether to start the health/metrics server.
    """

    namespace: str = ""
    secret_selector: str = ""
    target_selector: str = ""
    target_kinds: tuple[str, ...] = ("Deployment", "StatefulSet", "DaemonSet")
    dependency_annotation: str = "secret-reloader.io/secrets"
    fingerprint_prefix: str = "secret-fingerprint"
    workers: int = 2
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 300.0
    resync_period_seconds: int = 300
    watch_timeout_seconds: int = 60
    shutdown_timeout_seconds: int = 30
    health_port: int = 8080
    health_enabled: bool = True


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _parse_target_kinds(raw: str) -> tuple[str, ...]:
    by_lower = {kind.lower(): kind for kind in SUPPORTED_TARGET_KINDS}
    kinds: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        kind = by_lower.get(part.lower())
        if kind is None:
            raise ConfigError(
                f"TARGET_KINDS contains unsupported kind {part!r}; "
                f"supported: {', '.join(SUPPORTED_TARGET_KINDS)}"
            )
        if kind not in kinds:
            kinds.append(kind)
    if not kinds:
        raise ConfigError("TARGET_KINDS must name at least one workload kind")
    return tuple(kinds)


def _validate_annotation_key(name: str, key: str) -> None:
    prefix, separator, annotation_name = key.rpartition("/")
    if not annotation_name or len(annotation_name) > 63 or not _ANNOTATION_NAME.match(annotation_name):
        raise ConfigError(f"{name} is not a valid annotation key: {key!r}")
    if separator and (len(prefix) > 253 or not _DNS_SUBDOMAIN.match(prefix)):
        raise ConfigError(f"{name} has an invalid prefix: {key!r}")


def load_config(env: Mapping[str, str] | None = None) -> ReloaderConfig:
    """Load the controller configuration from the environment.

    Every variable is optional; see ``ReloaderConfig`` for defaults.  Raises
    :class:`ConfigError` on the first invalid value so the process fails fast
    instead of watching with a half-valid configuration.
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "").strip()
    dependency_annotation = values.get(
        "DEPENDENCY_ANNOTATION", ReloaderConfig.dependency_annotation
    ).strip()
    _validate_annotation_key("DEPENDENCY_ANNOTATION", dependency_annotation)

    fingerprint_prefix = values.get(
        "FINGERPRINT_ANNOTATION_PREFIX", ReloaderConfig.fingerprint_prefix
    ).strip()
    if len(fingerprint_prefix) > 253 or not _DNS_SUBDOMAIN.match(fingerprint_prefix):
        raise ConfigError(
            "FINGERPRINT_ANNOTATION_PREFIX must be a DNS subdomain, "
            f"got: {fingerprint_prefix!r}"
        )

    retry_base_ms = env_int("RETRY_BASE_DELAY_MS", 500, minimum=1, env=values)
    retry_max_seconds = env_int("RETRY_MAX_DELAY_SECONDS", 300, minimum=1, env=values)
    if retry_base_ms / 1000 > retry_max_seconds:
        raise ConfigError("RETRY_BASE_DELAY_MS must not exceed RETRY_MAX_DELAY_SECONDS")

    return ReloaderConfig(
        namespace=namespace,
        secret_selector=values.get("SECRET_SELECTOR", "").strip(),
        target_selector=values.get("TARGET_SELECTOR", "").strip(),
        target_kinds=_parse_target_kinds(
            values.get("TARGET_KINDS", ",".join(ReloaderConfig.target_kinds))
        ),
        dependency_annotation=dependency_annotation,
        fingerprint_prefix=fingerprint_prefix,
        workers=env_int("WORKERS", 2, minimum=1, maximum=64, env=values),
        retry_base_delay_seconds=retry_base_ms / 1000,
        retry_max_delay_seconds=float(retry_max_seconds),
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 300, minimum=0, env=values),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 60, minimum=1, env=values),
        shutdown_timeout_seconds=env_int("SHUTDOWN_TIMEOUT_SECONDS", 30, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        health_enabled=parse_bool(values.get("HEALTH_ENABLED"), default=True),
    )
