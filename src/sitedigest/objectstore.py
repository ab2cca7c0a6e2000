from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path

from .utils import parse_iso, sanitize_for_path

LLMS_TXT_NAME = "llms.txt"
LLMS_FULL_TXT_NAME = "llms-full.txt"
PAGE_NAME_MAX_CHARS = 100
PAGE_DIGEST_CHARS = 16

ARTIFACT_FILENAMES = {
    "llms_txt": LLMS_TXT_NAME,
    "llms_full_txt": LLMS_FULL_TXT_NAME,
}


class LocalObjectStore:
    """Path-addressed text blobs under a root directory."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def put(self, path: str, text: str) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=".tmp-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return path

    def get(self, path: str) -> str | None:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return target.read_text(encoding="utf-8")

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def _resolve(self, path: str) -> Path:
        root = self.root.resolve()
        target = (root / path).resolve()
        if target != root and root not in target.parents:
            raise ValueError(f"path_outside_store:{path}")
        return target


def job_folder(hostname: str, job_id: str, started_at: str) -> str:
    day = parse_iso(started_at).strftime("%Y%m%d")
    return f"domains/{sanitize_for_path(hostname)}/jobs/{day}-{job_id}"


def page_blob_name(page_url: str) -> str:
    """Readable file stem for a page URL; distinct URLs get distinct stems."""
    prefix = sanitize_for_path(page_url)[:PAGE_NAME_MAX_CHARS]
    digest = hashlib.sha256(page_url.encode("utf-8")).hexdigest()[:PAGE_DIGEST_CHARS]
    return f"{prefix}-{digest}"


def raw_page_path(hostname: str, job_id: str, started_at: str, page_url: str) -> str:
    folder = job_folder(hostname, job_id, started_at)
    return f"{folder}/pages/{page_blob_name(page_url)}_raw.md"


def processed_page_path(hostname: str, job_id: str, started_at: str, page_url: str) -> str:
    folder = job_folder(hostname, job_id, started_at)
    return f"{folder}/pages/{page_blob_name(page_url)}_processed.md"


def artifact_path(hostname: str, job_id: str, started_at: str, kind: str) -> str:
    filename = ARTIFACT_FILENAMES.get(kind)
    if not filename:
        raise ValueError(f"unknown_artifact_kind:{kind}")
    return f"{job_folder(hostname, job_id, started_at)}/{filename}"
