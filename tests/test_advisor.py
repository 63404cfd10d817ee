import subprocess
import unittest
from pathlib import Path
from unittest import mock

import advisor
from models import ThreadSpec

NCNN_VERBOSE_OUTPUT = """\
[0 NVIDIA GeForce RTX 3080]  queueC=2[8]  queueG=0[16]  queueT=1[2]
[0 NVIDIA GeForce RTX 3080]  bugsbn1=0  bugbilz=0  bugcopc=0  bugihfa=0
\x1b[0m[1 Intel(R) UHD Graphics 630]  queueC=0[1]  queueG=0[1]  queueT=0[1]
"""


class TestParsing(unittest.TestCase):
    def test_parse_ncnn_devices_dedupes_and_strips_ansi(self):
        self.assertEqual(
            advisor.parse_ncnn_devices(NCNN_VERBOSE_OUTPUT),
            [(0, "NVIDIA GeForce RTX 3080"), (1, "Intel(R) UHD Graphics 630")],
        )

    def test_parse_nvidia_smi(self):
        output = "NVIDIA GeForce RTX 3080, 10240\nbroken line\nTesla T4, 15360.0\n"
        self.assertEqual(
            advisor.parse_nvidia_smi(output),
            [("NVIDIA GeForce RTX 3080", 10240), ("Tesla T4", 15360)],
        )

    def test_match_vram_by_normalized_name(self):
        system = [("NVIDIA GeForce RTX 3080", 10240)]
        self.assertEqual(advisor.match_vram("NVIDIA GeForce RTX 3080", system), 10240)
        self.assertEqual(advisor.match_vram("GeForce RTX 3080", system), 10240)
        self.assertIsNone(advisor.match_vram("Intel UHD", system))


class TestRecommendations(unittest.TestCase):
    def test_ncnn_by_vram(self):
        self.assertEqual(advisor.ncnn_recommendation_by_vram(None), advisor.NcnnRecommendation(256, ThreadSpec(1, 2, 2)))
        self.assertEqual(advisor.ncnn_recommendation_by_vram(8192).tile_size, 320)
        self.assertEqual(advisor.ncnn_recommendation_by_vram(2048).tile_size, 128)

    def test_rife_by_vram_respects_core_budget(self):
        spec = advisor.rife_recommendation_by_vram(16384, cpu_cores=4)
        self.assertEqual(spec.proc, 2)

    def test_rife_uhd_uses_fewer_threads(self):
        regular = advisor.rife_recommendation_by_vram(8192, cpu_cores=16)
        uhd = advisor.rife_recommendation_by_vram(8192, uhd=True, cpu_cores=16)
        self.assertEqual(regular.proc, 6)
        self.assertEqual(uhd.proc, 3)

    def test_resolve_target_gpu(self):
        gpus = (
            advisor.GpuDevice(0, "small", 4096),
            advisor.GpuDevice(1, "big", 16384),
        )
        self.assertEqual(advisor.resolve_target_gpu(gpus, -1).id, 1)
        self.assertEqual(advisor.resolve_target_gpu(gpus, 0).id, 0)
        self.assertIsNone(advisor.resolve_target_gpu(gpus, 5))
        self.assertIsNone(advisor.resolve_target_gpu((), -1))

    def test_detection_failure_falls_back_to_static_defaults(self):
        with mock.patch("advisor.detect_gpu_devices", side_effect=OSError("no vulkan")):
            with mock.patch("advisor.progress_write") as write_mock:
                self.assertEqual(
                    advisor.recommend_rife_runtime(Path("/bin/rife"), 0, uhd=False), ThreadSpec(3, 6, 4)
                )
                self.assertEqual(
                    advisor.recommend_rife_runtime(Path("/bin/rife"), 0, uhd=True), ThreadSpec(2, 3, 2)
                )
                self.assertEqual(
                    advisor.recommend_ncnn_runtime(Path("/bin/waifu2x"), 0),
                    advisor.NcnnRecommendation(256, ThreadSpec(1, 2, 2)),
                )
        self.assertEqual(write_mock.call_count, 3)

    def test_recommendation_uses_detected_vram(self):
        gpus = (advisor.GpuDevice(0, "NVIDIA GeForce RTX 4090", 24576),)
        with mock.patch("advisor.detect_gpu_devices", return_value=gpus):
            recommendation = advisor.recommend_ncnn_runtime(Path("/bin/waifu2x"), -1)
        self.assertEqual(recommendation.tile_size, 512)

    def test_detect_gpu_devices_merges_system_vram(self):
        advisor.detect_gpu_devices.cache_clear()
        probe = subprocess.CompletedProcess([], 0, stdout="", stderr=NCNN_VERBOSE_OUTPUT)
        with mock.patch("advisor.run_subprocess", return_value=probe):
            with mock.patch(
                "advisor.list_system_gpus", return_value=[("NVIDIA GeForce RTX 3080", 10240)]
            ):
                devices = advisor.detect_gpu_devices("/bin/waifu2x-probe")
        advisor.detect_gpu_devices.cache_clear()

        self.assertEqual(devices[0].vram_mb, 10240)
        self.assertIsNone(devices[1].vram_mb)


if __name__ == "__main__":
    unittest.main()
