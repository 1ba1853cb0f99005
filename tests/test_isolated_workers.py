from __future__ import annotations

import io
import os
import shlex
import shutil
import subprocess
import sys
import tempfile
import unittest
from unittest import mock

import numpy as np
from PIL import Image

from core.errors import (
    EXIT_DECODE_FAILURE,
    EXIT_ENCODE_FAILURE,
    EXIT_OK,
    EXIT_USAGE,
    DecodeFailure,
    EncodeFailure,
)
from scripts import watermark_worker
from utils.archive import output_locations
from utils.batch import IsolatedProcessStrategy, process_batch, wait_for_workers
from utils.imaging import load_image

RED = (255, 0, 0, 255)
BLUE = (0, 0, 255, 255)
WORKER = f'"{sys.executable}" -m scripts.watermark_worker'


def _png(size, color=RED) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


class _TempDirs(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp(prefix="wm-test-")
        self.upload_dir = os.path.join(self.tmp, "uploads")
        self.output_dir = os.path.join(self.tmp, "out")

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def strategy(self, command=WORKER) -> IsolatedProcessStrategy:
        return IsolatedProcessStrategy(command=command, upload_dir=self.upload_dir, output_dir=self.output_dir)


class TestIsolatedDispatch(_TempDirs):
    def test_returns_locations_without_waiting(self):
        procs = [mock.MagicMock(name=f"proc{i}") for i in range(3)]
        with mock.patch("utils.batch.subprocess.Popen", side_effect=procs) as popen:
            result = process_batch(
                [("a.png", _png((10, 10))), ("b.png", _png((10, 10))), ("c.png", _png((10, 10)))],
                _png((4, 4), BLUE), 0.25, 3, self.strategy(),
            )
        self.assertEqual(len(result), 3)
        self.assertEqual([r.status for r in result], ["dispatched"] * 3)
        for p in procs:
            p.wait.assert_not_called()

        locations = output_locations(result)
        self.assertEqual(len(set(locations)), 3)
        for loc in locations:
            self.assertEqual(os.path.dirname(loc), self.output_dir)
            self.assertTrue(loc.endswith(".png"))

        # exactly three positional arguments after the worker command
        for call, loc in zip(popen.call_args_list, locations):
            argv = call.args[0]
            self.assertEqual(argv[-1], loc)
            self.assertEqual(len(argv) - 3, len(shlex.split(WORKER)))
            self.assertTrue(os.path.isfile(argv[-3]))
            self.assertTrue(os.path.isfile(argv[-2]))
            env = call.kwargs["env"]
            self.assertEqual(float(env["WATERMARK_OPACITY"]), 0.25)
            self.assertEqual(env["WATERMARK_MARGIN"], "3")
            self.assertEqual(env["WATERMARK_CLEANUP_INPUTS"], "1")

    def test_dispatch_failure_is_isolated_to_one_job(self):
        side_effects = [mock.MagicMock(), OSError("Resource temporarily unavailable"), mock.MagicMock()]
        with mock.patch("utils.batch.subprocess.Popen", side_effect=side_effects):
            result = process_batch(
                [("a.png", _png((5, 5))), ("b.png", _png((5, 5))), ("c.png", _png((5, 5)))],
                _png((2, 2), BLUE), strategy=self.strategy(),
            )
        self.assertEqual([r.status for r in result], ["dispatched", "failed", "dispatched"])
        self.assertEqual(result[1].error_kind, "worker_dispatch_failure")
        self.assertTrue(result.is_partial)
        self.assertEqual(len(output_locations(result)), 2)
        # the failed job's staged inputs are gone, the others wait for their workers
        self.assertEqual(sorted(os.listdir(result.staging_dir)), ["0", "2"])

    def test_missing_worker_executable(self):
        result = process_batch(
            [("a.png", _png((5, 5))), ("b.png", _png((5, 5)))],
            _png((2, 2), BLUE), strategy=self.strategy(command="no-such-watermark-worker-binary"),
        )
        self.assertEqual(len(result), 2)
        self.assertTrue(result.is_total_failure)
        self.assertTrue(all(r.error_kind == "worker_dispatch_failure" for r in result))
        self.assertFalse(os.path.exists(result.staging_dir))

    def test_bad_watermark_fails_before_spawning(self):
        with mock.patch("utils.batch.subprocess.Popen") as popen:
            with self.assertRaises(DecodeFailure):
                process_batch([("a.png", _png((5, 5)))], b"not an image", strategy=self.strategy())
            popen.assert_not_called()

    def test_wait_settles_exit_statuses(self):
        ok_proc, bad_proc, slow_proc = mock.MagicMock(), mock.MagicMock(), mock.MagicMock()
        bad_proc.wait.return_value = EXIT_ENCODE_FAILURE
        slow_proc.wait.side_effect = [subprocess.TimeoutExpired("worker", 0.1), -9]
        with mock.patch("utils.batch.subprocess.Popen", side_effect=[ok_proc, bad_proc, slow_proc]):
            result = process_batch(
                [("a.png", _png((5, 5))), ("b.png", _png((5, 5))), ("c.png", _png((5, 5)))],
                _png((2, 2), BLUE), strategy=self.strategy(),
            )
        ok_proc.wait.return_value = 0
        os.makedirs(self.output_dir, exist_ok=True)
        with open(result[0].location, "wb") as f:
            f.write(_png((5, 5)))

        wait_for_workers(result, timeout=0.1)
        self.assertEqual([r.status for r in result], ["ok", "failed", "failed"])
        self.assertEqual(result[1].error_kind, "encode_failure")
        self.assertEqual(result[2].error_kind, "timeout")
        slow_proc.kill.assert_called_once()
        self.assertFalse(os.path.exists(result.staging_dir))


class TestRealWorkers(_TempDirs):
    def _staged_files(self):
        return [f for _, _, names in os.walk(self.upload_dir) for f in names]

    def test_workers_write_watermarked_outputs(self):
        inputs = [("a.png", _png((100, 100))), ("b.png", _png((60, 40))), ("broken.png", b"junk")]
        result = process_batch(inputs, _png((20, 20), BLUE), 1.0, 10, self.strategy())
        self.assertEqual([r.status for r in result], ["dispatched"] * 3)

        wait_for_workers(result, timeout=120)
        self.assertEqual([r.status for r in result], ["ok", "ok", "failed"])
        self.assertEqual(result[2].error_kind, "decode_failure")

        a = np.asarray(load_image(result[0].location))
        self.assertEqual(a.shape, (100, 100, 4))
        self.assertEqual(a[75, 75].tolist(), list(BLUE))
        self.assertEqual(a[5, 5].tolist(), list(RED))
        self.assertEqual(load_image(result[1].location).size, (60, 40))

        self.assertEqual(self._staged_files(), [])
        self.assertEqual(os.listdir(self.upload_dir), [])
        self.assertEqual(sorted(os.listdir(self.output_dir)), sorted(os.path.basename(r.location) for r in result[:2]))

    def test_workers_clean_up_without_being_awaited(self):
        inputs = [("a.png", _png((20, 20))), ("broken.png", b"junk")]
        result = process_batch(inputs, _png((4, 4), BLUE), strategy=self.strategy())
        for r in result:
            r.process.wait(timeout=120)
        self.assertEqual(self._staged_files(), [])
        self.assertFalse(os.path.exists(result.staging_dir))


class TestWorkerScript(_TempDirs):
    def _write(self, name, data, subdir="") -> str:
        folder = os.path.join(self.upload_dir, subdir)
        os.makedirs(folder, exist_ok=True)
        path = os.path.join(folder, name)
        with open(path, "wb") as f:
            f.write(data)
        return path

    def test_success(self):
        base = self._write("base.png", _png((30, 30)))
        wm = self._write("wm.png", _png((10, 10), BLUE))
        out = os.path.join(self.output_dir, "nested", "out.png")
        with mock.patch("scripts.watermark_worker.WATERMARK_OPACITY", 1.0), \
                mock.patch("scripts.watermark_worker.WATERMARK_MARGIN", 0), \
                mock.patch("scripts.watermark_worker.WATERMARK_CLEANUP_INPUTS", False):
            self.assertEqual(watermark_worker.main([base, wm, out]), EXIT_OK)
        img = Image.open(out)
        self.assertEqual(img.size, (30, 30))
        self.assertEqual(img.convert("RGBA").getpixel((29, 29)), BLUE)
        self.assertEqual(img.convert("RGBA").getpixel((0, 0)), RED)
        # inputs are left alone unless cleanup is requested
        self.assertTrue(os.path.isfile(base))
        self.assertTrue(os.path.isfile(wm))
        self.assertEqual(os.listdir(os.path.dirname(out)), ["out.png"])

    def test_cleanup_removes_inputs_and_empty_dirs(self):
        base = self._write("input_a.png", _png((30, 30)), os.path.join("batch", "0"))
        wm = self._write("watermark", _png((10, 10), BLUE), os.path.join("batch", "0"))
        out = os.path.join(self.output_dir, "out.png")
        with mock.patch("scripts.watermark_worker.WATERMARK_CLEANUP_INPUTS", True):
            self.assertEqual(watermark_worker.main([base, wm, out]), EXIT_OK)
        self.assertTrue(os.path.isfile(out))
        self.assertFalse(os.path.exists(os.path.join(self.upload_dir, "batch")))
        self.assertTrue(os.path.isdir(self.upload_dir))

    def test_cleanup_keeps_batch_dir_with_pending_siblings(self):
        base = self._write("input_a.png", b"garbage", os.path.join("batch", "0"))
        wm = self._write("watermark", _png((10, 10), BLUE), os.path.join("batch", "0"))
        sibling = self._write("input_b.png", _png((5, 5)), os.path.join("batch", "1"))
        with mock.patch("scripts.watermark_worker.WATERMARK_CLEANUP_INPUTS", True):
            rc = watermark_worker.main([base, wm, os.path.join(self.output_dir, "out.png")])
        self.assertEqual(rc, EXIT_DECODE_FAILURE)
        self.assertFalse(os.path.exists(os.path.dirname(base)))
        self.assertTrue(os.path.isfile(sibling))

    def test_decode_failure_exit_code(self):
        base = self._write("base.png", b"garbage")
        wm = self._write("wm.png", _png((10, 10), BLUE))
        out = os.path.join(self.output_dir, "out.png")
        self.assertEqual(watermark_worker.main([base, wm, out]), EXIT_DECODE_FAILURE)
        self.assertFalse(os.path.exists(out))

    def test_encode_failure_exit_code(self):
        base = self._write("base.png", _png((10, 10)))
        wm = self._write("wm.png", _png((4, 4), BLUE))
        with mock.patch("scripts.watermark_worker.save_image", side_effect=EncodeFailure("disk full", "out.png")):
            rc = watermark_worker.main([base, wm, os.path.join(self.output_dir, "out.png")])
        self.assertEqual(rc, EXIT_ENCODE_FAILURE)

    def test_missing_input_is_decode_failure(self):
        wm = self._write("wm.png", _png((10, 10), BLUE))
        rc = watermark_worker.main([os.path.join(self.tmp, "nope.png"), wm, os.path.join(self.tmp, "o.png")])
        self.assertEqual(rc, EXIT_DECODE_FAILURE)

    def test_usage_error(self):
        with self.assertRaises(SystemExit) as ctx:
            watermark_worker.main(["only-one-arg"])
        self.assertEqual(ctx.exception.code, EXIT_USAGE)

    def test_exit_statuses_map_back_to_error_kinds(self):
        procs = {rc: mock.MagicMock(**{"wait.return_value": rc}) for rc in (EXIT_DECODE_FAILURE, EXIT_USAGE, 42)}
        with mock.patch("utils.batch.subprocess.Popen", side_effect=list(procs.values())):
            result = process_batch([(f"{rc}.png", _png((5, 5))) for rc in procs], _png((2, 2), BLUE), strategy=self.strategy())
        wait_for_workers(result)
        self.assertEqual(
            [r.error_kind for r in result],
            [DecodeFailure.kind, "worker_usage_error", "worker_failure"],
        )


if __name__ == "__main__":
    unittest.main()
