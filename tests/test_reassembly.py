import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import vhs_upscale
from checkpoints import CheckpointStore, prepare_work_directory
from errors import ReassemblyError
from toolchain import Toolchain

TOOLCHAIN = Toolchain(
    ffmpeg="ffmpeg",
    ffprobe="ffprobe",
    realesrgan_binary=Path("/opt/realesrgan-ncnn-vulkan"),
    models_dir=None,
)

OK = subprocess.CompletedProcess(args=["ffmpeg"], returncode=0, stdout="", stderr="")
FAILED = subprocess.CompletedProcess(
    args=["ffmpeg"],
    returncode=1,
    stdout="",
    stderr="Non-monotonous DTS in output stream",
)


class ReassemblyTestCase(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.source = root / "tape01.mkv"
        self.source.write_bytes(b"source")
        self.output = root / "out" / "tape01_upscaled.mp4"
        self.output.parent.mkdir()
        self.work_dir = prepare_work_directory(root / "work", self.source)
        self.store = CheckpointStore(self.work_dir.segments_dir)

    def tearDown(self):
        self.temp_dir.cleanup()

    def reassemble(self, *, has_audio):
        with mock.patch("builtins.print"), mock.patch("vhs_upscale.progress_write"):
            return vhs_upscale.reassemble(
                TOOLCHAIN,
                self.store,
                self.work_dir,
                self.source,
                self.output,
                has_audio=has_audio,
                audio_bitrate="160k",
            )


class TestReassemble(ReassemblyTestCase):
    def test_concat_order_follows_index_not_creation_time(self):
        for index in (2, 0, 1):
            self.store.path(index).write_bytes(f"segment {index}".encode())

        def fake_run(cmd, **kwargs):
            if "concat" in cmd:
                self.work_dir.concat_video_path.write_bytes(b"joined")
            return OK

        with mock.patch("vhs_upscale.run_subprocess", side_effect=fake_run):
            count = self.reassemble(has_audio=False)

        self.assertEqual(count, 3)
        manifest_lines = self.work_dir.concat_manifest_path.read_text().splitlines()
        self.assertEqual(
            manifest_lines,
            [f"file '{self.store.path(index)}'" for index in (0, 1, 2)],
        )

    def test_concat_is_stream_copy(self):
        self.store.path(0).write_bytes(b"segment")

        def fake_run(cmd, **kwargs):
            self.work_dir.concat_video_path.write_bytes(b"joined")
            return OK

        with mock.patch("vhs_upscale.run_subprocess", side_effect=fake_run) as run_mock:
            self.reassemble(has_audio=False)

        concat_cmd = run_mock.call_args_list[0].args[0]
        self.assertEqual(concat_cmd[concat_cmd.index("-c") + 1], "copy")
        self.assertEqual(concat_cmd[concat_cmd.index("-f") + 1], "concat")

    def test_no_audio_copies_video_only_intermediate(self):
        self.store.path(0).write_bytes(b"segment")

        def fake_run(cmd, **kwargs):
            self.work_dir.concat_video_path.write_bytes(b"joined video")
            return OK

        with mock.patch("vhs_upscale.run_subprocess", side_effect=fake_run) as run_mock:
            self.reassemble(has_audio=False)

        self.assertEqual(run_mock.call_count, 1)
        self.assertEqual(self.output.read_bytes(), b"joined video")
        self.assertTrue(self.work_dir.concat_video_path.exists())

    def test_audio_is_reencoded_and_truncated_to_shorter_stream(self):
        self.store.path(0).write_bytes(b"segment")

        with mock.patch("vhs_upscale.run_subprocess", return_value=OK) as run_mock:
            self.reassemble(has_audio=True)

        self.assertEqual(run_mock.call_count, 2)
        mux_cmd = run_mock.call_args_list[1].args[0]
        self.assertEqual(mux_cmd[mux_cmd.index("-c:v") + 1], "copy")
        self.assertEqual(mux_cmd[mux_cmd.index("-c:a") + 1], "aac")
        self.assertEqual(mux_cmd[mux_cmd.index("-b:a") + 1], "160k")
        self.assertIn("1:a:0", mux_cmd)
        self.assertIn(str(self.source), mux_cmd)
        self.assertIn("-shortest", mux_cmd)
        self.assertEqual(mux_cmd[-4], str(self.output))

    def test_empty_store_raises(self):
        with mock.patch("vhs_upscale.run_subprocess") as run_mock:
            with self.assertRaises(ReassemblyError) as ctx:
                self.reassemble(has_audio=True)

        run_mock.assert_not_called()
        self.assertEqual(ctx.exception.inspect_path, self.work_dir.segments_dir)

    def test_concat_failure_raises_without_reencode_fallback(self):
        self.store.path(0).write_bytes(b"segment")
        self.store.path(1).write_bytes(b"segment")

        with mock.patch("vhs_upscale.run_subprocess", return_value=FAILED) as run_mock:
            with self.assertRaises(ReassemblyError) as ctx:
                self.reassemble(has_audio=True)

        self.assertEqual(run_mock.call_count, 1)
        self.assertIn("Non-monotonous DTS", str(ctx.exception))

    def test_manifest_escapes_single_quotes(self):
        path = Path("/work/it's here/seg_000.mp4")
        manifest = self.work_dir.root / "escaped.txt"

        vhs_upscale.write_concat_manifest([path], manifest)

        self.assertEqual(manifest.read_text(), "file '/work/it'\\''s here/seg_000.mp4'\n")


if __name__ == "__main__":
    unittest.main()
