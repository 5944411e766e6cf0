from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from typing import Any

ANNOTATION_INGRESS_MODE = "octops.io/gameserver-ingress-mode"
ANNOTATION_INGRESS_DELAY = "octops.io/ingress-delay"
ANNOTATION_INGRESS_DOMAIN = "octops.io/gameserver-ingress-domain"
ANNOTATION_INGRESS_FQDN = "octops.io/gameserver-ingress-fqdn"
ANNOTATION_TERMINATE_TLS = "octops.io/terminate-tls"
ANNOTATION_ISSUER_TLS_NAME = "octops.io/issuer-tls-name"
ANNOTATION_TLS_SECRET_NAME = "octops.io/tls-secret-name"
ANNOTATION_INGRESS_CLASS_NAME = "octops.io/ingress-class-name"
ANNOTATION_SPEC_HASH = "octops.io/spec-hash"
ANNOTATION_INGRESS_READY = "octops.io/ingress-ready"
ANNOTATION_INGRESS_URL = "octops.io/ingress-url"

# Annotations with this prefix are copied onto the Ingress with the prefix removed.
PASSTHROUGH_PREFIX = "octops-"

_DURATION_UNITS: dict[str, float] = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)([a-zµμ]+)")
# Durations are bounded by a signed 64-bit nanosecond count (about 2562047h).
MAX_DURATION_SECONDS = (2**63 - 1) / 1e9


class DurationError(ValueError):
    """Raised when a duration string cannot be parsed."""


def parse_duration(value: str) -> float:
    """Parse a duration string such as ``3000ms`` or ``1m30s`` into seconds.

    Accepts the same grammar as Kubernetes tooling: an optional sign followed
    by one or more ``<number><unit>`` components where unit is one of
    ``ns``, ``us``, ``ms``, ``s``, ``m`` or ``h``.  A bare ``0`` is allowed.
    Surrounding whitespace and magnitudes beyond :data:`MAX_DURATION_SECONDS`
    are rejected.
    """
    raw = value
    if not raw:
        raise DurationError(f"invalid duration {value!r}")

    sign = 1.0
    if raw[0] in "+-":
        sign = -1.0 if raw[0] == "-" else 1.0
        raw = raw[1:]

    if raw == "0":
        return 0.0
    if not raw:
        raise DurationError(f"invalid duration {value!r}")

    total = 0.0
    position = 0
    while position < len(raw):
        match = _DURATION_COMPONENT.match(raw, position)
        if match is None:
            raise DurationError(f"invalid duration {value!r}")
        number, unit = match.groups()
        if unit not in _DURATION_UNITS:
            raise DurationError(f"unknown unit {unit!r} in duration {value!r}")
        total += float(number) * _DURATION_UNITS[unit]
        position = match.end()

    if total > MAX_DURATION_SECONDS:
        raise DurationError(f"invalid duration {value!r}: out of range")
    return sign * total


class Annotations(Mapping[str, str]):
    """Read-only view over a GameServer's annotations with typed accessors."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, str] = {
            k: ("" if v is None else str(v))
            for k, v in (values or {}).items()
            if isinstance(k, str)
        }

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Annotations({self._values!r})"

    def has_flag(self, key: str) -> bool:
        """Return True when *key* is present, regardless of its value."""
        return key in self._values

    def is_true(self, key: str) -> bool:
        return self._values.get(key, "").strip().lower() in {"1", "true", "yes", "on"}

    def get_duration(self, key: str) -> float | None:
        """Return the duration stored under *key* in seconds, or None when absent.

        Raises :class:`DurationError` when the annotation is present but malformed.
        """
        raw = self._values.get(key)
        if raw is None:
            return None
        return parse_duration(raw)

    def with_prefix(self, prefix: str) -> dict[str, str]:
        """Return annotations starting with *prefix*, keyed without it."""
        return {
            k[len(prefix):]: v
            for k, v in self._values.items()
            if k.startswith(prefix) and len(k) > len(prefix)
        }
