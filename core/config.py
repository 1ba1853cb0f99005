import os
import sys
import logging
from dotenv import load_dotenv

# Load .env from project root
try:
    load_dotenv(dotenv_path=os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".env")))
except Exception:
    try:
        load_dotenv()
    except Exception:
        pass


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, "") or default)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, "") or default)
    except ValueError:
        return default


BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# Compositing defaults
WATERMARK_OPACITY = _env_float("WATERMARK_OPACITY", 0.5)
WATERMARK_MARGIN = max(0, _env_int("WATERMARK_MARGIN", 10))
# numpy | pixel
WATERMARK_BACKEND = (os.getenv("WATERMARK_BACKEND", "numpy") or "numpy").strip().lower()

# Output encoding (lossless only) and archive packaging
OUTPUT_FORMAT = (os.getenv("OUTPUT_FORMAT", "png") or "png").strip().lower()
ARCHIVE_COMPRESSION = (os.getenv("ARCHIVE_COMPRESSION", "deflated") or "deflated").strip().lower()

MAX_FILES = _env_int("MAX_FILES", 100)
# inprocess | isolated
BATCH_STRATEGY = (os.getenv("BATCH_STRATEGY", "inprocess") or "inprocess").strip().lower()
# 0 = use cpu count
MAX_WORKERS = max(0, _env_int("MAX_WORKERS", 0))

# Isolated-process workers read inputs from UPLOAD_DIR and write to OUTPUT_DIR
UPLOAD_DIR = os.path.abspath(os.path.join(BASE_DIR, os.getenv("UPLOAD_DIR", os.path.join("tmp", "uploads"))))
OUTPUT_DIR = os.path.abspath(os.path.join(BASE_DIR, os.getenv("OUTPUT_DIR", "tmp")))
WORKER_COMMAND = (os.getenv("WORKER_COMMAND", "") or "").strip() or f'"{sys.executable}" -m scripts.watermark_worker'
# Set by the dispatcher: the worker deletes its staged inputs once they are read
WATERMARK_CLEANUP_INPUTS = (os.getenv("WATERMARK_CLEANUP_INPUTS", "0") or "0").strip().lower() in ("1", "true", "yes")

# Bootstrap
HOST = os.getenv("HOST", "127.0.0.1")
PORT = _env_int("PORT", 3000)

# Logging
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("watermarker")
