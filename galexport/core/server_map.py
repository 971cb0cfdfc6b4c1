"""Pattern-based parsing of the remote routing script.

The script is never executed. Only a handful of statement shapes are
recognised:

* ``case <bucket>:`` labels, optionally followed by ``<var> = <server>``.
  Labels without an assignment fall through to the next assignment.
* ``if (<var> == <bucket>) <var> = <server>`` overrides, applied last.
* ``var <var> = <n>`` or ``default: <var> = <n>`` for the default server.
* ``b: '<path>'`` for the base path. Without it the payload is unusable.

Variable names are not fixed; the script is minified and renames them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field


IDENTIFIER = r"[A-Za-z_$][\w$]*"
CASE_PATTERN = re.compile(rf"case\s+(\d+):(?:\s*{IDENTIFIER}\s*=\s*(\d+))?")
IF_PATTERN = re.compile(rf"if\s*\(\s*{IDENTIFIER}\s*===?\s*(\d+)\s*\)[\s{{]*{IDENTIFIER}\s*=\s*(\d+)")
DEFAULT_PATTERN = re.compile(rf"(?:var\s+|default:\s*){IDENTIFIER}\s*=\s*(\d+)")
BASE_PATH_PATTERN = re.compile(r"b:\s*[\"']([^\"']+)[\"']")


@dataclass(frozen=True)
class ServerMap:
    map: dict[int, int] = field(default_factory=dict)
    base_path: str = ""
    default_server: int = 0

    def server_index(self, bucket: int) -> int:
        return self.map.get(bucket, self.default_server)

    def server_id(self, bucket: int) -> int:
        # ids on the CDN are 1-based
        return self.server_index(bucket) + 1


def _scan_cases(payload: str) -> dict[int, int]:
    mapping: dict[int, int] = {}
    pending: list[int] = []
    for match in CASE_PATTERN.finditer(payload):
        pending.append(int(match.group(1)))
        if match.group(2) is None:
            continue
        server = int(match.group(2))
        for bucket in pending:
            mapping[bucket] = server
        pending.clear()
    return mapping


def parse_server_map(payload: str) -> ServerMap | None:
    base_match = BASE_PATH_PATTERN.search(payload)
    if base_match is None:
        return None

    mapping = _scan_cases(payload)
    for match in IF_PATTERN.finditer(payload):
        mapping[int(match.group(1))] = int(match.group(2))

    default_match = DEFAULT_PATTERN.search(payload)
    default_server = int(default_match.group(1)) if default_match else 0

    return ServerMap(
        map=mapping,
        base_path=base_match.group(1).strip("/"),
        default_server=default_server,
    )
