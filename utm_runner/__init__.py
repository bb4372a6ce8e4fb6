"""utm-runner package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "enums",
    "exceptions",
    "gallery",
    "host",
    "media",
    "migrate",
    "models",
    "network",
    "osascript",
    "portability",
    "utils",
    "utmctl",
    "vm",
]
