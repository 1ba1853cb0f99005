"""Error taxonomy for watermarking batches.

Batch-fatal errors are raised before any job is dispatched. Per-job errors are
caught by the orchestrator and recorded on that job's result.
"""
from typing import Optional


class WatermarkError(Exception):
    kind = "error"

    def __init__(self, message: str, identity: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.identity = identity


class MissingWatermark(WatermarkError):
    kind = "missing_watermark"


class EmptyBatch(WatermarkError):
    kind = "empty_batch"


class BatchTooLarge(WatermarkError):
    kind = "batch_too_large"


class DecodeFailure(WatermarkError):
    """Bytes could not be parsed into a pixel grid.

    Fatal for the batch only when raised for the shared watermark.
    """
    kind = "decode_failure"


class EncodeFailure(WatermarkError):
    kind = "encode_failure"


class WorkerDispatchFailure(WatermarkError):
    kind = "worker_dispatch_failure"


# Worker process exit statuses, shared by scripts/watermark_worker.py and the
# orchestrator that reads them back in utils/batch.py
EXIT_OK = 0
EXIT_DECODE_FAILURE = 1
EXIT_USAGE = 2  # argparse exits with 2 on bad arguments
EXIT_ENCODE_FAILURE = 3

EXIT_KINDS = {
    EXIT_DECODE_FAILURE: DecodeFailure.kind,
    EXIT_USAGE: "worker_usage_error",
    EXIT_ENCODE_FAILURE: EncodeFailure.kind,
}
