"""Reads the ``PLAY RECAP`` section that ``ansible-playbook`` prints last.

This is the one place that depends on the tool's human-oriented output. The
accepted grammar is::

    PLAY RECAP [*...]
    [*...]
    <host> : ok=N changed=N unreachable=N failed=N [other=N ...]
    ...
    <blank line or end of output>

Anything that does not match yields a zeroed, unsuccessful result instead of
an exception.
"""

from __future__ import annotations

import re

from .types import RecapResult

RECAP_MARKER = "PLAY RECAP"
COUNTERS = ("ok", "changed", "unreachable", "failed")

_SECTION_RE = re.compile(
    rf"^{RECAP_MARKER}[ \t*]*\r?\n(?:[ \t]*\*+[ \t]*\r?\n)?(.*?)(?:\r?\n[ \t]*\r?\n|\Z)",
    re.MULTILINE | re.DOTALL,
)
_COUNTER_RES = {name: re.compile(rf"\b{name}=(\d+)") for name in COUNTERS}


def parse_recap(output: str) -> RecapResult:
    match = _SECTION_RE.search(output or "")
    if not match:
        return RecapResult()

    section = match.group(1)
    totals = {name: sum(int(v) for v in regex.findall(section)) for name, regex in _COUNTER_RES.items()}
    return RecapResult(
        success=totals["failed"] == 0 and totals["unreachable"] == 0,
        **totals,
    )
