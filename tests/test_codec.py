import json
import tempfile
import unittest
from pathlib import Path

import codec
from frame_sequence import FrameSequenceInfo
from models import EncodeSettings
from toolchain import ToolResult, Toolchain

TOOLCHAIN = Toolchain(ffmpeg="ffmpeg", ffprobe="ffprobe")


class FakeRunner:
    """Records commands and replays scripted output lines."""

    def __init__(self, lines=(), stdout="", on_run=None):
        self.lines = list(lines)
        self.stdout = stdout
        self.on_run = on_run
        self.commands = []

    async def run(self, cmd, *, tool=None, on_line=None, check=True):
        self.commands.append([str(part) for part in cmd])
        if self.on_run is not None:
            self.on_run(cmd)
        for line in self.lines:
            if on_line is not None:
                on_line(line)
        return ToolResult(returncode=0, stdout=self.stdout, stderr="")


class TestParsing(unittest.TestCase):
    def test_parse_framerate(self):
        self.assertAlmostEqual(codec.parse_framerate("30000/1001"), 29.97, places=2)
        self.assertEqual(codec.parse_framerate("0/0"), 30.0)
        self.assertEqual(codec.parse_framerate("24"), 24.0)
        self.assertEqual(codec.parse_framerate("abc"), 30.0)
        self.assertEqual(codec.parse_framerate("25/0"), 30.0)

    def test_format_rate(self):
        self.assertEqual(codec.format_rate(60.0), "60")
        self.assertEqual(codec.format_rate(30000 / 1001), "29.97003")

    def test_parse_frame_from_line(self):
        self.assertEqual(codec.parse_frame_from_line("frame=  42"), 42)
        self.assertIsNone(codec.parse_frame_from_line("progress=continue"))

    def test_parse_video_info(self):
        payload = {
            "streams": [
                {
                    "codec_type": "video",
                    "codec_name": "h264",
                    "width": 1920,
                    "height": 1080,
                    "avg_frame_rate": "30/1",
                    "nb_frames": "300",
                },
                {"codec_type": "audio", "codec_name": "aac"},
            ],
            "format": {"duration": "10.0", "bit_rate": "5000000", "size": "6250000"},
        }
        info = codec.parse_video_info(Path("clip.mp4"), payload)

        self.assertEqual((info.width, info.height), (1920, 1080))
        self.assertEqual(info.fps, 30.0)
        self.assertEqual(info.total_frames, 300)
        self.assertEqual(info.audio_codec, "aac")
        self.assertTrue(info.has_audio)
        self.assertEqual(info.bitrate, 5000000)

    def test_total_frames_from_duration(self):
        payload = {
            "streams": [{"codec_type": "video", "avg_frame_rate": "25/1", "width": 64, "height": 64}],
            "format": {"duration": "2.0"},
        }
        info = codec.parse_video_info(Path("clip.mp4"), payload)
        self.assertEqual(info.total_frames, 50)
        self.assertFalse(info.has_audio)

    def test_missing_video_stream_raises(self):
        with self.assertRaises(RuntimeError):
            codec.parse_video_info(Path("a.mp3"), {"streams": [{"codec_type": "audio"}]})


class TestEncodeFlags(unittest.TestCase):
    def test_default_software_flags(self):
        flags = codec.get_codec_flags(EncodeSettings())
        self.assertEqual(
            flags,
            ["-c:v:0", "libx264", "-pix_fmt:v:0", "yuv420p", "-preset:v:0", "medium", "-crf:v:0", "18"],
        )

    def test_libx265_default_crf(self):
        flags = codec.get_codec_flags(EncodeSettings(software_encoder="libx265", crf=None))
        self.assertEqual(flags[-1], "23")

    def test_hardware_flags(self):
        flags = codec.get_codec_flags(EncodeSettings(use_hardware_encoding=True), video_index=1)
        self.assertEqual(flags[:2], ["-c:v:1", "h264_nvenc"])
        self.assertIn("-cq:v:1", flags)

    def test_unsupported_encoder_raises(self):
        with self.assertRaises(ValueError):
            codec.get_codec_flags(EncodeSettings(software_encoder="libaom-av1"))

    def test_normalize_scale_dimension(self):
        self.assertEqual(codec.normalize_scale_dimension(1081, "height"), 1082)
        self.assertEqual(codec.normalize_scale_dimension(1080, "height"), 1080)
        self.assertIsNone(codec.normalize_scale_dimension(None, "width"))
        with self.assertRaises(ValueError):
            codec.normalize_scale_dimension(0, "width")


class TestStreamMaps(unittest.TestCase):
    def test_keeps_every_stream_with_dispositions(self):
        streams = [
            {"index": 0, "codec_type": "video"},
            {"index": 1, "codec_type": "audio", "disposition": {"default": 1}},
            {"index": 2, "codec_type": "audio", "disposition": {"default": 0}},
            {"index": 3, "codec_type": "subtitle", "disposition": {"default": 1, "forced": 1}},
        ]
        args, video_index = codec.build_stream_maps(streams)

        self.assertEqual(video_index, 0)
        self.assertEqual(
            args,
            [
                "-map", "0:v:0",
                "-map", "1:1", "-disposition:a:0", "default",
                "-map", "1:2", "-disposition:a:1", "0",
                "-map", "1:3", "-disposition:s:0", "default+forced",
            ],
        )

    def test_cover_art_is_not_replaced(self):
        streams = [
            {"index": 0, "codec_type": "video", "disposition": {"attached_pic": 1}},
            {"index": 1, "codec_type": "video"},
        ]
        args, video_index = codec.build_stream_maps(streams)

        self.assertEqual(args, ["-map", "1:0", "-map", "0:v:0"])
        self.assertEqual(video_index, 1)

    def test_no_video_in_source(self):
        args, video_index = codec.build_stream_maps([{"index": 0, "codec_type": "audio"}])
        self.assertEqual(args, ["-map", "0:v:0", "-map", "1"])
        self.assertEqual(video_index, 0)


class TestBuildEncodeCommand(unittest.TestCase):
    SEQUENCE = FrameSequenceInfo("png", 1, 10, "/tmp/frames/frame_%08d.png")

    def test_targets_add_filters(self):
        cmd = codec.build_encode_command(
            "ffmpeg",
            self.SEQUENCE,
            Path("/out.mp4"),
            fps=120.0,
            encode_settings=EncodeSettings(),
            target_width=3001,
            target_height=1688,
            target_fps=100.0,
        )
        self.assertEqual(cmd[cmd.index("-framerate") + 1], "120")
        self.assertEqual(cmd[cmd.index("-start_number") + 1], "1")
        self.assertEqual(
            cmd[cmd.index("-filter:v:0") + 1], "scale=w=3002:h=1688:flags=lanczos,fps=100"
        )
        self.assertEqual(cmd[-1], "/out.mp4")

    def test_matching_fps_has_no_filter(self):
        cmd = codec.build_encode_command(
            "ffmpeg",
            self.SEQUENCE,
            Path("/out.mp4"),
            fps=60.0,
            encode_settings=EncodeSettings(),
            target_fps=60.0,
        )
        self.assertNotIn("-filter:v:0", cmd)

    def test_audio_source_maps_metadata_and_chapters(self):
        cmd = codec.build_encode_command(
            "ffmpeg",
            self.SEQUENCE,
            Path("/out.mp4"),
            fps=30.0,
            encode_settings=EncodeSettings(),
            audio_source=Path("/in.mkv"),
            source_streams=[{"index": 0, "codec_type": "video"}, {"index": 1, "codec_type": "audio"}],
        )
        self.assertIn("/in.mkv", cmd)
        self.assertIn("-copy_unknown", cmd)
        self.assertEqual(cmd[cmd.index("-map_chapters") + 1], "1")
        self.assertEqual(cmd[cmd.index("-c") + 1], "copy")


class TestAsyncAdapters(unittest.IsolatedAsyncioTestCase):
    async def test_get_video_info_uses_ffprobe_json(self):
        payload = {"streams": [{"codec_type": "video", "width": 64, "height": 32, "avg_frame_rate": "10/1"}]}
        runner = FakeRunner(stdout=json.dumps(payload))

        info = await codec.get_video_info(TOOLCHAIN, Path("clip.mp4"), runner)

        self.assertEqual((info.width, info.height, info.fps), (64, 32, 10.0))
        self.assertEqual(runner.commands[0][0], "ffprobe")

    async def test_invalid_ffprobe_json_raises(self):
        with self.assertRaises(RuntimeError):
            await codec.get_video_info(TOOLCHAIN, Path("clip.mp4"), FakeRunner(stdout="not json"))

    async def test_extract_frames_reports_progress(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            frames_dir = Path(temp_dir) / "frames"

            def write_frames(_cmd):
                for number in range(1, 4):
                    (frames_dir / f"frame_{number:08d}.png").write_bytes(b"")

            runner = FakeRunner(lines=["frame=1", "progress=continue", "frame=3"], on_run=write_frames)
            events = []
            count = await codec.extract_frames(
                TOOLCHAIN,
                runner,
                Path("clip.mp4"),
                frames_dir,
                total_frames=3,
                on_progress=lambda current, total: events.append((current, total)),
            )

        self.assertEqual(count, 3)
        self.assertEqual(events, [(1, 3), (3, 3)])
        self.assertIn("-progress", runner.commands[0])
        self.assertTrue(runner.commands[0][-1].endswith("frame_%08d.png"))

    async def test_extract_frames_without_output_raises(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            with self.assertRaises(RuntimeError):
                await codec.extract_frames(TOOLCHAIN, FakeRunner(), Path("clip.mp4"), Path(temp_dir))

    async def test_encode_video_probes_source_streams(self):
        streams = {"streams": [{"index": 0, "codec_type": "video"}, {"index": 1, "codec_type": "audio"}]}
        with tempfile.TemporaryDirectory() as temp_dir:
            frames_dir = Path(temp_dir)
            for number in range(1, 3):
                (frames_dir / f"frame_{number:08d}.png").write_bytes(b"")
            runner = FakeRunner(stdout=json.dumps(streams))
            events = []

            sequence = await codec.encode_video(
                TOOLCHAIN,
                runner,
                frames_dir,
                frames_dir / "out" / "video.mp4",
                fps=30.0,
                encode_settings=EncodeSettings(),
                audio_source=Path("/in.mp4"),
                on_progress=lambda current, total: events.append((current, total)),
            )

        self.assertEqual(sequence.frame_count, 2)
        self.assertEqual(runner.commands[0][0], "ffprobe")
        self.assertEqual(runner.commands[1][0], "ffmpeg")
        self.assertIn("1:1", runner.commands[1])
        self.assertEqual(events[-1], (2, 2))


if __name__ == "__main__":
    unittest.main()
