from __future__ import annotations

import re

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_code(code: object) -> str:
    """Return the canonical form of a member/voter code.

    All whitespace is removed and the result is uppercased. Every comparison
    between codes (sessions, members, voter codes) goes through this function.
    """

    if not isinstance(code, str) or not code:
        return ""
    return _WHITESPACE_RE.sub("", code).upper().strip()
