"""Parsers for the text output of macOS administration tools.

Each function takes the captured stdout of one command and returns plain
Python values; none of them run anything, so they are testable off-macOS.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Set

_SERVICE_LINE = re.compile(r"^\((\d+|\*)\)\s+(.+)$")
_HARDWARE_LINE = re.compile(r"^\(Hardware Port:\s*(.*?),\s*Device:\s*(.*?)\)$")


def parse_dscl_ids(output: str) -> Set[int]:
    """Brief: Collect numeric ids from ``dscl . -list /Users UniqueID`` style output.

    Inputs:
      - output: Lines of ``<name> <id>`` (whitespace separated).

    Outputs:
      - set[int] of ids; non-numeric trailing fields are ignored.

    Example:
      >>> sorted(parse_dscl_ids("_www   70\\nnobody -2\\nalice 501\\n"))
      [-2, 70, 501]
    """
    ids: Set[int] = set()
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        try:
            ids.add(int(fields[-1]))
        except ValueError:
            continue
    return ids


def find_free_id(used: Set[int], low: int, high: int) -> Optional[int]:
    """Brief: Lowest id in ``[low, high]`` absent from ``used``.

    Example:
      >>> find_free_id({301, 302}, 301, 499)
      303
      >>> find_free_id({1, 2}, 1, 2) is None
      True
    """
    for candidate in range(low, high + 1):
        if candidate not in used:
            return candidate
    return None


def parse_default_interface(output: str) -> Optional[str]:
    """Brief: Extract the interface from ``route -n get default``.

    Example:
      >>> parse_default_interface("   route to: default\\n  interface: en0\\n")
      'en0'
    """
    for line in output.splitlines():
        key, sep, value = line.strip().partition(":")
        if sep and key.strip() == "interface" and value.strip():
            return value.strip()
    return None


def parse_service_order(output: str) -> Dict[str, str]:
    """Brief: Map device name to network service name.

    Inputs:
      - output: stdout of ``networksetup -listnetworkserviceorder``, e.g.::

            (1) Wi-Fi
            (Hardware Port: Wi-Fi, Device: en0)

    Outputs:
      - dict: {"en0": "Wi-Fi", ...}. Disabled services (``(*)``) keep their
        name without the marker.
    """
    mapping: Dict[str, str] = {}
    current: Optional[str] = None
    for raw in output.splitlines():
        line = raw.strip()
        hw = _HARDWARE_LINE.match(line)
        if hw:
            device = hw.group(2).strip()
            if current and device:
                mapping[device] = current
            current = None
            continue
        svc = _SERVICE_LINE.match(line)
        if svc:
            current = svc.group(2).strip()
    return mapping


def parse_dns_servers(output: str) -> List[str]:
    """Brief: Parse ``networksetup -getdnsservers <service>``.

    The tool prints a sentence rather than an empty list when nothing is set.

    Example:
      >>> parse_dns_servers("There aren't any DNS Servers set on Wi-Fi.\\n")
      []
      >>> parse_dns_servers("1.1.1.1\\n8.8.8.8\\n")
      ['1.1.1.1', '8.8.8.8']
    """
    servers = []
    for line in output.splitlines():
        line = line.strip()
        if not line or " " in line:
            continue
        servers.append(line)
    return servers
