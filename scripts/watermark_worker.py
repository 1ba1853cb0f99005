#!/usr/bin/env python3
"""
Watermark a single image. Spawned once per image by the isolated-process batch strategy.

Usage:
    python -m scripts.watermark_worker BASE WATERMARK OUTPUT

Opacity, margin and output format are read from WATERMARK_OPACITY,
WATERMARK_MARGIN and OUTPUT_FORMAT. With WATERMARK_CLEANUP_INPUTS=1 the two
input files are deleted after they are read, along with their directory and
its parent once those are empty.

Exit status: 0 success, 1 decode failure, 2 usage error, 3 encode/write failure.
"""
import os
import sys
import argparse

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import (
    OUTPUT_FORMAT,
    WATERMARK_CLEANUP_INPUTS,
    WATERMARK_MARGIN,
    WATERMARK_OPACITY,
    logger,
)
from core.errors import (
    EXIT_DECODE_FAILURE,
    EXIT_ENCODE_FAILURE,
    EXIT_OK,
    DecodeFailure,
    EncodeFailure,
)
from utils.imaging import load_image, save_image
from utils.watermark import apply_watermark


def _discard_inputs(*paths: str) -> None:
    for p in paths:
        try:
            if os.path.isfile(p):
                os.remove(p)
        except OSError as ex:
            logger.warning(f"Could not remove staged input {p}: {ex}")
    # job dir, then the batch dir once its last job is gone
    job_dir = os.path.dirname(os.path.abspath(paths[0]))
    for d in (job_dir, os.path.dirname(job_dir)):
        try:
            os.rmdir(d)
        except OSError:
            break


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Apply a watermark to one image.")
    parser.add_argument("base", help="Path of the image to watermark")
    parser.add_argument("watermark", help="Path of the watermark image")
    parser.add_argument("output", help="Where to write the watermarked image")
    args = parser.parse_args(argv)

    try:
        base = load_image(args.base)
        wm = load_image(args.watermark)
    except DecodeFailure as ex:
        logger.error(f"Worker decode failed: {ex.message}")
        return EXIT_DECODE_FAILURE
    finally:
        if WATERMARK_CLEANUP_INPUTS:
            _discard_inputs(args.base, args.watermark)

    out = apply_watermark(base, wm, WATERMARK_OPACITY, WATERMARK_MARGIN)

    try:
        save_image(out, args.output, OUTPUT_FORMAT)
    except EncodeFailure as ex:
        logger.error(f"Worker encode failed: {ex.message}")
        return EXIT_ENCODE_FAILURE

    logger.info(f"Watermarked {args.base} -> {args.output}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
