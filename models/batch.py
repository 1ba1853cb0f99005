from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_DISPATCHED = "dispatched"


@dataclass(frozen=True)
class CompositingJob:
    """One base image to watermark. `destination` is an archive entry name or an output path."""
    index: int
    identity: str
    data: bytes
    opacity: float
    margin: int
    destination: str


@dataclass
class JobResult:
    index: int
    identity: str
    status: str
    data: Optional[bytes] = None
    location: Optional[str] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None
    # Popen handle for dispatched workers; never serialized
    process: Optional[Any] = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED

    def to_dict(self) -> dict:
        out = {"identity": self.identity, "status": self.status}
        if self.location:
            out["location"] = self.location
        if self.error_kind:
            out["error_kind"] = self.error_kind
            out["error"] = self.error
        return out


@dataclass
class BatchResult:
    """Per-job outcomes, index-aligned with the batch input."""
    results: List[JobResult] = field(default_factory=list)
    # Upload staging directory of an isolated-process batch
    staging_dir: Optional[str] = None

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[JobResult]:
        return iter(self.results)

    def __getitem__(self, idx: int) -> JobResult:
        return self.results[idx]

    @property
    def identities(self) -> List[str]:
        return [r.identity for r in self.results]

    @property
    def succeeded(self) -> List[JobResult]:
        return [r for r in self.results if not r.failed]

    @property
    def failures(self) -> List[JobResult]:
        return [r for r in self.results if r.failed]

    @property
    def is_total_failure(self) -> bool:
        return bool(self.results) and not self.succeeded

    @property
    def is_partial(self) -> bool:
        return bool(self.failures) and bool(self.succeeded)
