#!/usr/bin/env python3
"""Validate utm_runner/gallery.yaml: schema correctness and media reachability."""

from __future__ import annotations

import sys
from pathlib import Path

import requests
import yaml

from utm_runner.exceptions import ManifestError
from utm_runner.gallery import Gallery

REPO_ROOT = Path(__file__).resolve().parents[2]
GALLERY_PATH = REPO_ROOT / "utm_runner" / "gallery.yaml"
REQUEST_TIMEOUT = 30
USER_AGENT = "utm-runner/gallery-validator (GitHub Actions)"


def load_gallery(path: Path) -> dict:
    with open(path) as f:
        return yaml.safe_load(f)


# ── Phase 1: Schema validation (fail-fast) ──────────────────────────


def validate_schema(data: dict) -> list[str]:
    try:
        Gallery.parse(data, source=str(GALLERY_PATH))
    except ManifestError as exc:
        return [line.strip() for line in str(exc).splitlines()[1:]] or [str(exc)]
    return []


# ── Phase 2: URL reachability (collect-all) ──────────────────────────


def check_url(key: str, url: str, size: int = 0) -> str | None:
    """Return an error string if the URL is unreachable or the wrong size, else None."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    try:
        resp = session.head(url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        if resp.status_code in (403, 405):
            # Some mirrors reject HEAD; fall back to GET with streaming
            resp = session.get(url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True)
            resp.close()
        if resp.status_code >= 400:
            return f"[{key}] HTTP {resp.status_code} for {url}"
        length = resp.headers.get("Content-Length")
        if size and length and int(length) != size:
            return f"[{key}] size mismatch for {url}: manifest {size}, server {length}"
        return None
    except requests.RequestException as exc:
        return f"[{key}] {exc.__class__.__name__}: {exc} for {url}"


def validate_urls(data: dict) -> list[str]:
    errors: list[str] = []
    app = (data.get("meta") or {}).get("utm_app") or {}
    if app.get("url"):
        err = check_url("utm_app", app["url"])
        if err:
            errors.append(err)

    for key, entry in data["vms"].items():
        iso = entry.get("iso") or {}
        err = check_url(key, iso["url"], iso.get("size", 0))
        if err:
            errors.append(err)
    return errors


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    print(f"Loading {GALLERY_PATH}")
    data = load_gallery(GALLERY_PATH)

    print("\n=== Phase 1: Schema validation ===")
    schema_errors = validate_schema(data)
    if schema_errors:
        for e in schema_errors:
            print(f"  ERROR: {e}")
        print(f"\nSchema validation failed with {len(schema_errors)} error(s)")
        return 1
    vm_count = len(data["vms"])
    print(f"  OK: {vm_count} templates, all schemas valid")

    print("\n=== Phase 2: URL reachability ===")
    url_errors = validate_urls(data)
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)} problem(s)")
        return 1
    print(f"  OK: all {vm_count} media URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
