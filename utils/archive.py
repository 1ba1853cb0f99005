import io
import json
import os
import zipfile
from typing import List, Optional

from core.config import ARCHIVE_COMPRESSION, logger
from models.batch import BatchResult, STATUS_DISPATCHED

FAILURES_ENTRY = "failures.json"

_COMPRESSION = {
    "stored": zipfile.ZIP_STORED,
    "deflated": zipfile.ZIP_DEFLATED,
}


def _compression_for(name: Optional[str]) -> int:
    key = (name or ARCHIVE_COMPRESSION or "deflated").strip().lower()
    return _COMPRESSION.get(key, zipfile.ZIP_DEFLATED)


def _entry_name(identity: str) -> str:
    return os.path.basename((identity or "").replace("\\", "/")) or "image"


def build_archive(result: BatchResult, compression: Optional[str] = None) -> bytes:
    """Zip every successful job under its identity; failed jobs are listed in failures.json."""
    zip_buf = io.BytesIO()
    used_names: set[str] = set()

    def _unique_name(n: str) -> str:
        base, ext = os.path.splitext(n)
        cand = n
        i = 1
        while cand in used_names:
            cand = f"{base}_{i}{ext}"
            i += 1
        used_names.add(cand)
        return cand

    # Reserve the report name so an input called failures.json cannot shadow it
    if result.failures:
        used_names.add(FAILURES_ENTRY)

    with zipfile.ZipFile(zip_buf, mode="w", compression=_compression_for(compression)) as zf:
        for r in result:
            if not r.ok or r.data is None:
                continue
            zf.writestr(_unique_name(_entry_name(r.identity)), r.data)
        if result.failures:
            report = [r.to_dict() for r in result.failures]
            zf.writestr(FAILURES_ENTRY, json.dumps(report, indent=2))
    logger.info(f"Packaged {len(result.succeeded)} image(s) into archive ({len(result.failures)} failed)")
    return zip_buf.getvalue()


def output_locations(result: BatchResult) -> List[str]:
    """Declared output paths for dispatched (or settled) worker jobs, in input order."""
    return [r.location for r in result if r.location and (r.status == STATUS_DISPATCHED or r.ok)]
