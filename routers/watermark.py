from fastapi import APIRouter, UploadFile, File, Form
from fastapi.responses import FileResponse, JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.responses import StreamingResponse
from typing import List, Optional, Tuple
import io
import os

from core.config import MAX_FILES, OUTPUT_DIR, UPLOAD_DIR, logger
from core.errors import BatchTooLarge, WatermarkError
from utils.archive import build_archive, output_locations
from utils.batch import InProcessStrategy, IsolatedProcessStrategy, process_batch, safe_filename
from utils.imaging import media_type_for

router = APIRouter(prefix="/api/watermark", tags=["watermark"])


def _uploads(*groups: Optional[List[UploadFile]]) -> List[UploadFile]:
  return [f for group in groups for f in (group or [])]


def _too_many(uploads: List[UploadFile]) -> Optional[JSONResponse]:
  # Checked on the upload list so an oversized batch is rejected before any body is read
  if MAX_FILES and len(uploads) > MAX_FILES:
    return JSONResponse({"error": f"too many files (max {MAX_FILES})", "kind": BatchTooLarge.kind}, status_code=400)
  return None


async def _collect_inputs(uploads: List[UploadFile]) -> List[Tuple[Optional[str], bytes]]:
  # Empty uploads are kept so they surface as per-image failures
  inputs: List[Tuple[Optional[str], bytes]] = []
  for f in uploads:
    data = await f.read()
    inputs.append((f.filename or None, data))
  return inputs


async def _read_watermark(watermark: Optional[UploadFile]) -> Optional[bytes]:
  if watermark is None:
    return None
  return await watermark.read()


@router.post("/batch")
async def watermark_batch(
  watermark: Optional[UploadFile] = File(None, description="Watermark image applied to every file"),
  files: Optional[List[UploadFile]] = File(None, description="Images to watermark"),
  files_array: Optional[List[UploadFile]] = File(None, alias="files[]"),
  opacity: Optional[float] = Form(None),
  margin: Optional[int] = Form(None),
  compression: Optional[str] = Form(None),
  fmt: Optional[str] = Form(None),
):
  """
  Watermark a batch in-process and return every result in one ZIP archive.
  Archive entries keep the original filenames; failed images are reported in
  X-Failed-Files and a failures.json entry.
  """
  uploads = _uploads(files, files_array)
  rejected = _too_many(uploads)
  if rejected is not None:
    return rejected

  try:
    wm_bytes = await _read_watermark(watermark)
    inputs = await _collect_inputs(uploads)
    result = await run_in_threadpool(
      process_batch, inputs, wm_bytes, opacity, margin, InProcessStrategy(fmt=fmt),
    )
  except WatermarkError as ex:
    return JSONResponse({"error": ex.message, "kind": ex.kind}, status_code=400)
  except Exception as ex:
    logger.exception(f"Watermark batch failed: {ex}")
    return JSONResponse({"error": str(ex)}, status_code=500)

  if result.is_total_failure:
    return JSONResponse({
      "error": "No images processed",
      "failures": [r.to_dict() for r in result.failures],
    }, status_code=422)

  data = await run_in_threadpool(build_archive, result, compression)
  headers = {
    "Content-Disposition": "attachment; filename=watermarked_batch.zip",
    "X-Processed-Count": str(len(result.succeeded)),
    "X-Failed-Count": str(len(result.failures)),
    "Access-Control-Expose-Headers": "Content-Disposition, X-Processed-Count, X-Failed-Count, X-Failed-Files",
  }
  if result.failures:
    headers["X-Failed-Files"] = ",".join(safe_filename(r.identity) for r in result.failures)
  return StreamingResponse(io.BytesIO(data), media_type="application/zip", headers=headers)


@router.post("/dispatch")
async def watermark_dispatch(
  watermark: Optional[UploadFile] = File(None, description="Watermark image applied to every file"),
  files: Optional[List[UploadFile]] = File(None, description="Images to watermark"),
  files_array: Optional[List[UploadFile]] = File(None, alias="files[]"),
  opacity: Optional[float] = Form(None),
  margin: Optional[int] = Form(None),
  fmt: Optional[str] = Form(None),
):
  """Spawn one worker process per image and return the expected output locations without waiting."""
  uploads = _uploads(files, files_array)
  rejected = _too_many(uploads)
  if rejected is not None:
    return rejected

  try:
    wm_bytes = await _read_watermark(watermark)
    inputs = await _collect_inputs(uploads)
    strategy = IsolatedProcessStrategy(upload_dir=UPLOAD_DIR, output_dir=OUTPUT_DIR, fmt=fmt)
    result = await run_in_threadpool(process_batch, inputs, wm_bytes, opacity, margin, strategy)
  except WatermarkError as ex:
    return JSONResponse({"error": ex.message, "kind": ex.kind}, status_code=400)
  except Exception as ex:
    logger.exception(f"Watermark dispatch failed: {ex}")
    return JSONResponse({"error": str(ex)}, status_code=500)

  outputs = output_locations(result)
  body = {
    "message": f"Dispatched {len(outputs)} file(s) for watermarking",
    "dispatched": len(outputs),
    "failed": len(result.failures),
    "outputs": [{"identity": r.identity, "name": os.path.basename(r.location)} for r in result if r.location and not r.failed],
    "failures": [r.to_dict() for r in result.failures],
  }
  logger.info(body["message"])
  return JSONResponse(body, status_code=200 if outputs else 500)


@router.get("/outputs/{name}")
async def watermark_output(name: str):
  """Fetch a worker output once it has been written."""
  fname = safe_filename(name)
  path = os.path.join(OUTPUT_DIR, fname)
  # Hidden names are in-progress writes
  if fname.startswith(".") or not os.path.isfile(path):
    return JSONResponse({"error": "not found"}, status_code=404)
  return FileResponse(path, media_type=media_type_for(os.path.splitext(fname)[1]), filename=fname)
