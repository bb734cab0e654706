# shran/versions.py
"""
Small version helpers used for library override constraints.

Supported constraint syntax:
- exact: "1.2.3" or "=1.2.3"
- ranges: ">=1.2", "<2.0", ">=1.2,<2.0"
"""

from __future__ import annotations

import os
import re
from typing import List, Optional, Union

_OPERATORS = (">=", "<=", ">", "<", "=")
_VERSION_RE = re.compile(r"^[0-9A-Za-z][0-9A-Za-z._+-]*$")
# libssl.so.3.0.2 / libfoo-1.2.tar.gz / boost_1_81_0.tar.bz2 (underscore form not recognized)
_ARTIFACT_VERSION_RE = re.compile(r"(?:\.so\.|[-_]v?)(\d+(?:\.\d+)+)")


def _split(constraint: str) -> List[str]:
    return [p.strip() for p in constraint.split(",") if p.strip()]


def _split_op(part: str):
    for op in _OPERATORS:
        if part.startswith(op):
            return op, part[len(op):].strip()
    return "=", part


def _key(v: str) -> List[Union[int, str]]:
    return [int(x) if x.isdigit() else x for x in re.split(r"[.+-]", v)]


def compare(v1: str, v2: str) -> int:
    """Naive compare splitting by dots, numeric when possible; 1.0 == 1.0.0."""
    a = _key(v1)
    b = _key(v2)
    width = max(len(a), len(b))
    a += [0] * (width - len(a))
    b += [0] * (width - len(b))
    try:
        return (a > b) - (a < b)
    except TypeError:
        # mixed int/str components: fall back to string comparison
        sa, sb = [str(x) for x in a], [str(x) for x in b]
        return (sa > sb) - (sa < sb)


def is_valid_constraint(constraint: Optional[str]) -> bool:
    if constraint is None:
        return True
    if not str(constraint).strip():
        return False
    for part in _split(str(constraint)):
        _op, want = _split_op(part)
        if not want or not _VERSION_RE.match(want):
            return False
    return True


def version_satisfies(version: str, constraint: Optional[str]) -> bool:
    if not constraint or constraint.strip() == "":
        return True
    if not is_valid_constraint(constraint):
        return False
    for part in _split(constraint):
        op, want = _split_op(part)
        c = compare(version, want)
        if op == ">=" and c < 0:
            return False
        if op == "<=" and c > 0:
            return False
        if op == ">" and c <= 0:
            return False
        if op == "<" and c >= 0:
            return False
        if op == "=" and c != 0:
            return False
    return True


def version_from_artifact(path_or_url: str) -> Optional[str]:
    """Best-effort version extraction from an artifact file name."""
    name = os.path.basename(path_or_url.split("?", 1)[0])
    for suffix in (".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".zip"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    m = _ARTIFACT_VERSION_RE.search(name)
    return m.group(1) if m else None
