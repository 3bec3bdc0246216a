# podscaler/quantity.py
"""
Kubernetes resource quantities.

Manifests express storage and CPU the way the API server does ("1Gi",
"500m", "0.5", "256Mi", "2k"). Claims store capacity as bytes and usage
snapshots store CPU as millicores, so every manifest value passes through
here once. Parsing itself is the kubernetes client's parse_quantity.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING
from typing import Union

from kubernetes.utils import parse_quantity as _k8s_parse_quantity

_BINARY_SUFFIXES = (("Ei", 2 ** 60), ("Pi", 2 ** 50), ("Ti", 2 ** 40), ("Gi", 2 ** 30), ("Mi", 2 ** 20), ("Ki", 2 ** 10))

Quantity = Union[str, int, float]


def parse_quantity(value: Quantity) -> Decimal:
    """Parse a quantity into a Decimal in base units."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid quantity: {value!r}")
    if isinstance(value, float):
        value = str(value)
    if isinstance(value, str):
        value = value.strip()
    return _k8s_parse_quantity(value)


def parse_bytes(value: Quantity) -> int:
    """Storage/memory quantity → whole bytes (rounded up)."""
    q = parse_quantity(value)
    if q < 0:
        raise ValueError(f"Negative byte quantity: {value!r}")
    return int(q.to_integral_value(rounding=ROUND_CEILING))


def parse_cpu_millicores(value: Quantity) -> int:
    """CPU quantity → millicores ("500m" → 500, "1.5" → 1500)."""
    q = parse_quantity(value)
    if q < 0:
        raise ValueError(f"Negative cpu quantity: {value!r}")
    return int((q * 1000).to_integral_value(rounding=ROUND_CEILING))


def format_bytes(num: int) -> str:
    """Bytes → the largest exact binary suffix ("1073741824" → "1Gi")."""
    for suffix, unit in _BINARY_SUFFIXES:
        if num >= unit and num % unit == 0:
            return f"{num // unit}{suffix}"
    return str(num)


__all__ = ["parse_quantity", "parse_bytes", "parse_cpu_millicores", "format_bytes"]
