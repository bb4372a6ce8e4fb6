"""Template gallery loaded from the bundled YAML manifest."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from utm_runner.config import gallery_path
from utm_runner.constants import ARCH_ALIASES, CHECKSUM_RE, ENUM_TABLES, SUPPORTED_OS, URL_RE
from utm_runner.exceptions import ManagerError, ManifestError
from utm_runner.models import GalleryEntry, GalleryMeta, HardwareProfile, MediaSource, UTMAppRelease
from utm_runner.utils import log

_HARDWARE_FIELDS = {"ram": "ram_mb", "disk": "disk_mb", "cpu": "cpus"}


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _validate_entry(key: str, entry: Any, errors: List[str]) -> None:
    if not isinstance(entry, dict):
        errors.append(f"[{key}] entry is not a mapping")
        return

    for name in ("name", "os", "arch"):
        if name not in entry:
            errors.append(f"[{key}] missing required field '{name}'")
        elif not isinstance(entry[name], str) or not entry[name].strip():
            errors.append(f"[{key}] '{name}' must be a non-empty string")

    if isinstance(entry.get("os"), str) and entry["os"] not in SUPPORTED_OS:
        errors.append(f"[{key}] 'os' must be one of {sorted(SUPPORTED_OS)}, got '{entry['os']}'")
    if isinstance(entry.get("arch"), str) and entry["arch"].lower() not in ARCH_ALIASES:
        errors.append(f"[{key}] 'arch' must be one of {sorted(ARCH_ALIASES)}, got '{entry['arch']}'")
    backend = entry.get("backend", "qemu")
    if backend not in ENUM_TABLES["backend"]:
        errors.append(f"[{key}] 'backend' must be one of {sorted(ENUM_TABLES['backend'])}, got '{backend}'")

    template = entry.get("template")
    if not isinstance(template, dict):
        errors.append(f"[{key}] missing required mapping 'template'")
    else:
        for name in _HARDWARE_FIELDS:
            if not _positive_int(template.get(name)):
                errors.append(f"[{key}] 'template.{name}' must be a positive integer")

    iso = entry.get("iso")
    if not isinstance(iso, dict):
        errors.append(f"[{key}] missing required mapping 'iso'")
        return
    url = iso.get("url")
    if not isinstance(url, str) or not URL_RE.match(url):
        errors.append(f"[{key}] 'iso.url' must start with http:// or https://")
    filename = iso.get("filename")
    if not isinstance(filename, str) or not filename.strip() or "/" in filename:
        errors.append(f"[{key}] 'iso.filename' must be a plain file name")
    checksum = iso.get("checksum")
    if not isinstance(checksum, str) or not CHECKSUM_RE.match(checksum.lower()):
        errors.append(f"[{key}] 'iso.checksum' must be a sha256 hex digest")
    size = iso.get("size", 0)
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        errors.append(f"[{key}] 'iso.size' must be a non-negative integer")


def _check_media_collisions(vms: Dict[Any, Any], errors: List[str]) -> None:
    """Entries share a cached file only when they declare the same media."""
    owners: Dict[str, tuple] = {}
    for key, entry in vms.items():
        iso = entry.get("iso") if isinstance(entry, dict) else None
        if not isinstance(iso, dict) or not isinstance(iso.get("filename"), str):
            continue
        filename = iso["filename"].strip()
        checksum = str(iso.get("checksum") or "").lower()
        if checksum.startswith("sha256:"):
            checksum = checksum[len("sha256:"):]
        owner = owners.setdefault(filename, (str(key), checksum))
        if owner[1] != checksum:
            errors.append(f"[{key}] 'iso.filename' '{filename}' is already used by '{owner[0]}' with a different checksum")


def _build_entry(key: str, entry: Dict[str, Any]) -> GalleryEntry:
    template = entry["template"]
    iso = entry["iso"]
    os_name = entry["os"]
    return GalleryEntry(
        key=key,
        name=entry["name"].strip(),
        os=os_name,
        arch=entry["arch"].lower(),
        description=str(entry.get("description") or ""),
        tags=tuple(str(tag) for tag in entry.get("tags") or ()),
        backend=entry.get("backend", "qemu"),
        uefi=bool(entry.get("uefi", os_name in ("linux", "windows"))),
        hardware=HardwareProfile(ram_mb=template["ram"], disk_mb=template["disk"], cpus=template["cpu"]),
        media=MediaSource(
            url=iso["url"],
            checksum=iso["checksum"].lower(),
            filename=iso["filename"].strip(),
            size=iso.get("size", 0),
        ),
    )


def _build_meta(raw: Any) -> GalleryMeta:
    if not isinstance(raw, dict):
        return GalleryMeta(schema_version="1")
    utm_app = None
    app_raw = raw.get("utm_app")
    if isinstance(app_raw, dict) and app_raw.get("version") and app_raw.get("url"):
        utm_app = UTMAppRelease(
            version=str(app_raw["version"]),
            url=str(app_raw["url"]),
            checksum=str(app_raw.get("checksum") or ""),
            min_macos=str(app_raw.get("min_macos") or ""),
        )
    return GalleryMeta(schema_version=str(raw.get("schema_version", "1")), utm_app=utm_app)


class Gallery:
    """Read-only catalog of VM templates.

    Lookups and filters hand out new dicts; the entries themselves are
    frozen, so callers can never mutate the catalog.
    """

    def __init__(self, entries: Dict[str, GalleryEntry], meta: Optional[GalleryMeta] = None) -> None:
        self._entries = dict(entries)
        self.meta = meta or GalleryMeta(schema_version="1")

    @classmethod
    def parse(cls, data: Any, source: str = "<manifest>") -> "Gallery":
        if not isinstance(data, dict):
            raise ManifestError(f"Gallery manifest {source} must be a mapping")
        vms = data.get("vms")
        if not isinstance(vms, dict) or not vms:
            raise ManifestError(f"Gallery manifest {source} has no 'vms' mapping")

        errors: List[str] = []
        for key, entry in vms.items():
            _validate_entry(str(key), entry, errors)
        _check_media_collisions(vms, errors)
        if errors:
            detail = "\n  ".join(errors)
            raise ManifestError(f"Invalid gallery manifest {source}:\n  {detail}")

        entries = {str(key): _build_entry(str(key), entry) for key, entry in vms.items()}
        return cls(entries, _build_meta(data.get("meta")))

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Gallery":
        """Parse the manifest at ``path`` (bundled gallery by default)."""
        if path is None:
            path = gallery_path()
        if not path.exists():
            raise ManifestError(f"Gallery manifest missing: {path}")
        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as exc:
            raise ManifestError(f"Gallery manifest {path} contains invalid YAML: {exc}") from exc
        gallery = cls.parse(data, source=str(path))
        log("DEBUG", f"Loaded {len(gallery)} gallery entries from {path}")
        return gallery

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> List[str]:
        return sorted(self._entries)

    def entries(self) -> Dict[str, GalleryEntry]:
        return dict(self._entries)

    def get(self, key: str) -> GalleryEntry:
        entry = self._entries.get(key)
        if entry is None:
            available = "\n    ".join(self.keys())
            raise ManagerError(
                f"VM '{key}' not found in gallery.\n"
                f"  Available templates:\n"
                f"    {available}\n"
                f"  Run 'utm-runner gallery' to see details."
            )
        return entry

    def filter_by_os(self, os_name: str) -> Dict[str, GalleryEntry]:
        wanted = os_name.strip().lower()
        return {k: v for k, v in self._entries.items() if v.os == wanted}

    def filter_by_arch(self, arch: str) -> Dict[str, GalleryEntry]:
        wanted = arch.strip().lower()
        wanted = ARCH_ALIASES.get(wanted, wanted)
        return {k: v for k, v in self._entries.items() if ARCH_ALIASES.get(v.arch, v.arch) == wanted}

    def filter_by_tag(self, tag: str) -> Dict[str, GalleryEntry]:
        return {k: v for k, v in self._entries.items() if tag in v.tags}


_GALLERY: Optional[Gallery] = None


def get_gallery() -> Gallery:
    """Return the process-wide gallery, loading it on first use."""
    global _GALLERY
    if _GALLERY is None:
        _GALLERY = Gallery.load()
    return _GALLERY
