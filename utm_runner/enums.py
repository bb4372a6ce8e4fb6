"""Translation between configuration vocabulary and scripting bridge enum codes.

The tables are closed: a value that is not listed raises
UnsupportedConfiguration rather than falling back to a default.
"""

from __future__ import annotations

import re
from typing import Dict

from utm_runner.constants import ARCH_ALIASES, ENUM_TABLES
from utm_runner.exceptions import UnsupportedConfiguration

_CHEVRON_RE = re.compile(r"constant \*{4}(\w{4})")


def _table(kind: str) -> Dict[str, str]:
    table = ENUM_TABLES.get(kind)
    if table is None:
        supported = ", ".join(sorted(ENUM_TABLES))
        raise UnsupportedConfiguration(f"Unknown enum kind '{kind}'. Supported: {supported}")
    return table


def translate(kind: str, value: str) -> str:
    """Return the bridge code for ``value`` in the ``kind`` table."""
    table = _table(kind)
    key = (value or "").strip().lower()
    code = table.get(key)
    if code is None:
        valid = ", ".join(sorted(table))
        raise UnsupportedConfiguration(f"Unsupported {kind} '{value}'. Valid values: {valid}")
    return code


def reverse(kind: str, code: str) -> str:
    """Return the configuration value that maps to ``code``."""
    for value, candidate in _table(kind).items():
        if candidate == code:
            return value
    raise UnsupportedConfiguration(f"Unknown {kind} code '{code}'")


def parse_reported(kind: str, token: str) -> str:
    """Read an enum as printed back by a listing script.

    UTM prints either the terminology name (``emulated``), the raw code
    (``EmUd``) or the chevron form (``«constant ****EmUd»``).
    """
    text = (token or "").strip()
    match = _CHEVRON_RE.search(text)
    if match:
        return reverse(kind, match.group(1))
    table = _table(kind)
    if text.lower() in table:
        return text.lower()
    return reverse(kind, text)


def backend_code(name: str) -> str:
    return translate("backend", name)


def controller_code(name: str) -> str:
    return translate("controller", name)


def network_mode_code(name: str) -> str:
    return translate("network", name)


def protocol_code(name: str) -> str:
    return translate("protocol", name)


def normalize_arch(arch: str) -> str:
    """Map gallery architecture names (arm64, amd64) to UTM's (aarch64, x86_64)."""
    key = (arch or "").strip().lower()
    normalized = ARCH_ALIASES.get(key)
    if normalized is None:
        valid = ", ".join(sorted(ARCH_ALIASES))
        raise UnsupportedConfiguration(f"Unsupported architecture '{arch}'. Valid values: {valid}")
    return normalized
