"""
Version labels.

Prototype lineages use letters (vA, vB, ... vZ), Production lineages use
integers (v1, v2, ...). Letters past vZ follow the LABEL_OVERFLOW setting:
"extend" continues spreadsheet-column style (vAA, vAB, ...), "error" refuses.
"""
from __future__ import annotations

import re

from app.doclife.errors import InvalidLabel, SequenceExhausted

ALPHA = "alpha"
NUMERIC = "numeric"

OVERFLOW_EXTEND = "extend"
OVERFLOW_ERROR = "error"

_ALPHA_RE = re.compile(r"^v([A-Z]+)$")
_NUMERIC_RE = re.compile(r"^v([1-9][0-9]*)$")


def initial_label(is_production: bool) -> str:
    return "v1" if is_production else "vA"


def family_for(is_production: bool) -> str:
    return NUMERIC if is_production else ALPHA


def parse_label(label: str) -> tuple[str, int]:
    """Return (family, ordinal). vA -> (alpha, 1), vAA -> (alpha, 27), v3 -> (numeric, 3)."""
    lbl = (label or "").strip()
    m = _NUMERIC_RE.fullmatch(lbl)
    if m:
        return NUMERIC, int(m.group(1))
    m = _ALPHA_RE.fullmatch(lbl)
    if m:
        n = 0
        for ch in m.group(1):
            n = n * 26 + (ord(ch) - ord("A") + 1)
        return ALPHA, n
    raise InvalidLabel(f"Unsupported version label: {label!r} (expected vA.. or v1..)")


def is_valid_label(label: str, is_production: bool | None = None) -> bool:
    try:
        family, _ = parse_label(label)
    except InvalidLabel:
        return False
    return is_production is None or family == family_for(is_production)


def label_ordinal(label: str) -> int:
    return parse_label(label)[1]


def _alpha(n: int) -> str:
    out = []
    while n > 0:
        n -= 1
        out.append(chr(ord("A") + (n % 26)))
        n //= 26
    return "".join(reversed(out))


def format_label(family: str, ordinal: int) -> str:
    if ordinal < 1:
        raise InvalidLabel(f"Version ordinal must be positive (got {ordinal}).")
    if family == NUMERIC:
        return f"v{ordinal}"
    return f"v{_alpha(ordinal)}"


def next_label(prior: str | None, is_production: bool, *, overflow: str = OVERFLOW_EXTEND) -> str:
    """
    Next label in the lineage's family.

    `prior=None` starts a lineage. A prior label from the other family is
    rejected rather than converted.
    """
    if prior is None:
        return initial_label(is_production)
    family, ordinal = parse_label(prior)
    expected = family_for(is_production)
    if family != expected:
        kind = "Production" if is_production else "Prototype"
        raise InvalidLabel(f"{kind} lineages use {expected} labels; got {prior!r}.")
    if family == ALPHA and ordinal >= 26 and overflow == OVERFLOW_ERROR:
        raise SequenceExhausted(
            f"Prototype labels are exhausted after {prior!r} (LABEL_OVERFLOW=error).",
        )
    return format_label(family, ordinal + 1)
