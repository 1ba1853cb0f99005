"""
Batch orchestration: apply one shared watermark to many base images.

Two execution strategies sit behind `process_batch`:
- InProcessStrategy decodes the watermark once and shares it read-only with a
  thread pool; encoded outputs are collected before returning.
- IsolatedProcessStrategy spawns one worker process per image and returns the
  expected output locations immediately (fire-and-forget).

Results are always index-aligned with the input, whatever order jobs finish in.
"""
import os
import re
import shlex
import shutil
import subprocess
import time
import uuid
import concurrent.futures as cf
from typing import Iterable, List, Optional, Tuple

import numpy as np

from core.config import (
    BASE_DIR,
    BATCH_STRATEGY,
    MAX_FILES,
    MAX_WORKERS,
    OUTPUT_DIR,
    UPLOAD_DIR,
    WATERMARK_MARGIN,
    WATERMARK_OPACITY,
    WORKER_COMMAND,
    logger,
)
from core.errors import (
    EXIT_KINDS,
    BatchTooLarge,
    EmptyBatch,
    MissingWatermark,
    WatermarkError,
    WorkerDispatchFailure,
)
from models.batch import (
    STATUS_DISPATCHED,
    STATUS_FAILED,
    STATUS_OK,
    BatchResult,
    CompositingJob,
    JobResult,
)
from utils.imaging import decode_image, encode_image, extension_for
from utils.watermark import apply_watermark, prepare_watermark

def safe_filename(name: str) -> str:
    base = os.path.basename((name or "").replace("\\", "/"))
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", base)
    return base or "file"


def _failed(job: CompositingJob, kind: str, message: str, location: Optional[str] = None) -> JobResult:
    return JobResult(
        index=job.index,
        identity=job.identity,
        status=STATUS_FAILED,
        location=location,
        error_kind=kind,
        error=message,
    )


class InProcessStrategy:
    """Run every job inside this process on a bounded thread pool."""

    name = "in-process"

    def __init__(self, max_workers: Optional[int] = None, fmt: Optional[str] = None, backend: Optional[str] = None):
        self.max_workers = max_workers if max_workers is not None else MAX_WORKERS
        self.fmt = fmt
        self.backend = backend

    def destination(self, identity: str) -> str:
        return identity

    def _worker_count(self, n_jobs: int) -> int:
        cpu = os.cpu_count() or 2
        cap = self.max_workers if self.max_workers and self.max_workers > 0 else cpu
        return max(1, min(cpu, cap, n_jobs))

    def run_job(self, job: CompositingJob, watermark: np.ndarray) -> JobResult:
        try:
            base = decode_image(job.data, job.identity)
            out = apply_watermark(base, watermark, job.opacity, job.margin, backend=self.backend)
            data = encode_image(out, self.fmt, job.identity)
            return JobResult(index=job.index, identity=job.identity, status=STATUS_OK, data=data)
        except WatermarkError as ex:
            logger.warning(f"Watermarking failed for {job.identity}: {ex.message}")
            return _failed(job, ex.kind, ex.message)
        except Exception as ex:
            logger.exception(f"Unexpected failure for {job.identity}: {ex}")
            return _failed(job, "internal_error", str(ex))

    def run(self, jobs: List[CompositingJob], watermark: bytes) -> BatchResult:
        # Fatal for the batch: no job can proceed without the shared watermark
        wm = prepare_watermark(decode_image(watermark, "watermark"))

        results: List[Optional[JobResult]] = [None] * len(jobs)
        max_workers = self._worker_count(len(jobs))

        if len(jobs) == 1 or max_workers == 1:
            for pos, job in enumerate(jobs):
                results[pos] = self.run_job(job, wm)
        else:
            with cf.ThreadPoolExecutor(max_workers=max_workers) as ex:
                futures = {ex.submit(self.run_job, job, wm): pos for pos, job in enumerate(jobs)}
                for fut in cf.as_completed(futures):
                    results[futures[fut]] = fut.result()

        return BatchResult(results=[r for r in results if r is not None])


class IsolatedProcessStrategy:
    """Spawn one independent worker process per job; do not wait for completion.

    Workers receive exactly three positional arguments: base path, watermark
    path and output path. Opacity, margin and format travel in the environment.
    """

    name = "isolated-process"

    def __init__(
        self,
        command: Optional[str] = None,
        upload_dir: Optional[str] = None,
        output_dir: Optional[str] = None,
        fmt: Optional[str] = None,
    ):
        self.command = shlex.split(command or WORKER_COMMAND)
        self.upload_dir = upload_dir or UPLOAD_DIR
        self.output_dir = output_dir or OUTPUT_DIR
        self.fmt = fmt

    def destination(self, identity: str) -> str:
        return os.path.join(self.output_dir, f"{uuid.uuid4()}.{extension_for(self.fmt)}")

    def _spawn(self, job: CompositingJob, base_path: str, wm_path: str) -> subprocess.Popen:
        env = dict(os.environ)
        env.update({
            "WATERMARK_OPACITY": repr(float(job.opacity)),
            "WATERMARK_MARGIN": str(int(job.margin)),
            "OUTPUT_FORMAT": extension_for(self.fmt),
            "WATERMARK_CLEANUP_INPUTS": "1",
        })
        try:
            return subprocess.Popen(
                self.command + [base_path, wm_path, job.destination],
                cwd=BASE_DIR,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
            )
        except (OSError, ValueError) as ex:
            raise WorkerDispatchFailure(f"cannot start worker: {ex}", job.identity) from ex

    def _stage(self, job_dir: str, job: CompositingJob, watermark: bytes) -> Tuple[str, str]:
        base_path = os.path.join(job_dir, f"input_{safe_filename(job.identity)}")
        wm_path = os.path.join(job_dir, "watermark")
        try:
            os.makedirs(job_dir, exist_ok=True)
            with open(base_path, "wb") as f:
                f.write(job.data)
            with open(wm_path, "wb") as f:
                f.write(watermark)
        except OSError as ex:
            raise WorkerDispatchFailure(f"cannot stage input: {ex}", job.identity) from ex
        return base_path, wm_path

    def run(self, jobs: List[CompositingJob], watermark: bytes) -> BatchResult:
        # Validate up front so a broken watermark fails the batch instead of every worker
        decode_image(watermark, "watermark")

        # upload_dir/<batch>/<index>/{base, watermark}. Workers delete their own
        # job dir and then the batch dir once it is empty, so everything is
        # staged before the first worker starts.
        batch_dir = os.path.join(self.upload_dir, uuid.uuid4().hex)
        os.makedirs(self.output_dir, exist_ok=True)

        staged = {}
        failed = {}
        for job in jobs:
            job_dir = os.path.join(batch_dir, str(job.index))
            try:
                staged[job.index] = self._stage(job_dir, job, watermark)
            except WorkerDispatchFailure as ex:
                logger.warning(f"Could not stage {job.identity}: {ex.message}")
                shutil.rmtree(job_dir, ignore_errors=True)
                failed[job.index] = _failed(job, ex.kind, ex.message, job.destination)

        results: List[JobResult] = []
        for job in jobs:
            if job.index in failed:
                results.append(failed[job.index])
                continue
            base_path, wm_path = staged[job.index]
            try:
                proc = self._spawn(job, base_path, wm_path)
            except WorkerDispatchFailure as ex:
                logger.warning(f"Dispatch failed for {job.identity}: {ex.message}")
                shutil.rmtree(os.path.dirname(base_path), ignore_errors=True)
                results.append(_failed(job, ex.kind, ex.message, job.destination))
                continue
            results.append(JobResult(
                index=job.index,
                identity=job.identity,
                status=STATUS_DISPATCHED,
                location=job.destination,
                process=proc,
            ))

        try:
            # Empty when every dispatch failed or all workers already finished
            os.rmdir(batch_dir)
        except OSError:
            pass
        return BatchResult(results=results, staging_dir=batch_dir)


def default_strategy(fmt: Optional[str] = None):
    if BATCH_STRATEGY in ("isolated", "isolated-process", "subprocess"):
        return IsolatedProcessStrategy(fmt=fmt)
    return InProcessStrategy(fmt=fmt)


def process_batch(
    base_images: Iterable[Tuple[Optional[str], bytes]],
    watermark: Optional[bytes],
    opacity: Optional[float] = None,
    margin: Optional[int] = None,
    strategy=None,
) -> BatchResult:
    """Watermark every (identity, bytes) pair against one shared watermark.

    Raises MissingWatermark, EmptyBatch or BatchTooLarge before anything is
    dispatched, and DecodeFailure when the watermark itself cannot be decoded.
    Per-image failures are returned as failed entries, never raised.
    """
    if not watermark:
        raise MissingWatermark("watermark image is required")
    items = list(base_images)
    if not items:
        raise EmptyBatch("no base images supplied")
    if MAX_FILES and len(items) > MAX_FILES:
        raise BatchTooLarge(f"too many files (max {MAX_FILES})")

    strategy = strategy or default_strategy()
    opacity = WATERMARK_OPACITY if opacity is None else float(opacity)
    margin = WATERMARK_MARGIN if margin is None else max(0, int(margin))

    jobs: List[CompositingJob] = []
    for idx, (identity, data) in enumerate(items):
        ident = identity or f"{uuid.uuid4().hex}.{extension_for(strategy.fmt)}"
        jobs.append(CompositingJob(
            index=idx,
            identity=ident,
            data=data or b"",
            opacity=opacity,
            margin=margin,
            destination=strategy.destination(ident),
        ))

    logger.info(f"Watermarking {len(jobs)} image(s) with {strategy.name} strategy (opacity={opacity}, margin={margin})")
    result = strategy.run(jobs, watermark)
    if result.failures:
        logger.info(f"Batch finished with {len(result.failures)} failure(s) out of {len(result)}")
    return result


def wait_for_workers(result: BatchResult, timeout: Optional[float] = None) -> BatchResult:
    """Block until dispatched workers exit and settle their status.

    A worker still running when `timeout` (seconds, for the whole batch) runs
    out is killed and its job marked failed. The staged inputs of the batch are
    removed once every worker has exited.
    """
    deadline = time.monotonic() + timeout if timeout is not None else None
    for r in result:
        if r.status != STATUS_DISPATCHED or r.process is None:
            continue
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            rc = r.process.wait(timeout=remaining)
        except subprocess.TimeoutExpired:
            r.process.kill()
            r.process.wait()
            r.status = STATUS_FAILED
            r.error_kind = "timeout"
            r.error = "worker did not finish before the deadline"
            continue
        if rc == 0 and r.location and os.path.isfile(r.location):
            r.status = STATUS_OK
        else:
            r.status = STATUS_FAILED
            r.error_kind = EXIT_KINDS.get(rc, "worker_failure")
            r.error = f"worker exited with status {rc}"
    if result.staging_dir:
        # Every worker has exited; drop whatever inputs they left behind
        shutil.rmtree(result.staging_dir, ignore_errors=True)
    return result
