import tempfile
import unittest
from pathlib import Path

import checkpoints
from errors import WorkspaceLockedError


class TestCheckpointNaming(unittest.TestCase):
    def test_names_are_zero_padded(self):
        self.assertEqual(checkpoints.checkpoint_name(0), "seg_000.mp4")
        self.assertEqual(checkpoints.checkpoint_name(42), "seg_042.mp4")

    def test_lexicographic_order_matches_numeric_order(self):
        names = [checkpoints.checkpoint_name(index) for index in (10, 2, 100, 0, 9)]

        self.assertEqual(
            [checkpoints.parse_checkpoint_index(name) for name in sorted(names)],
            [0, 2, 9, 10, 100],
        )

    def test_index_beyond_fixed_width_is_refused(self):
        self.assertEqual(checkpoints.checkpoint_name(999), "seg_999.mp4")
        with self.assertRaises(ValueError):
            checkpoints.checkpoint_name(1000)

    def test_parse_ignores_foreign_files(self):
        self.assertIsNone(checkpoints.parse_checkpoint_index(".seg_001.partial.mp4"))
        self.assertIsNone(checkpoints.parse_checkpoint_index("segments.txt"))
        self.assertEqual(checkpoints.parse_checkpoint_index("seg_007.mp4"), 7)


class TestCheckpointStore(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.segments_dir = Path(self.temp_dir.name) / "segments"
        self.segments_dir.mkdir()
        self.store = checkpoints.CheckpointStore(self.segments_dir)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_exists_requires_non_empty_file(self):
        self.store.path(0).touch()
        self.store.path(1).write_bytes(b"video")

        self.assertFalse(self.store.exists(0))
        self.assertTrue(self.store.exists(1))
        self.assertFalse(self.store.exists(2))

    def test_list_all_orders_by_index_not_creation_time(self):
        for index in (2, 0, 1):
            self.store.path(index).write_bytes(f"segment {index}".encode())

        listed = self.store.list_all()

        self.assertEqual([index for index, _ in listed], [0, 1, 2])
        self.assertEqual(listed[0][1], self.segments_dir / "seg_000.mp4")

    def test_list_all_skips_partials_and_empty_files(self):
        self.store.path(0).write_bytes(b"ok")
        self.store.path(1).touch()
        self.store.partial_path(2).write_bytes(b"half")
        (self.segments_dir / "notes.txt").write_text("x")

        self.assertEqual([index for index, _ in self.store.list_all()], [0])
        self.assertTrue(self.store.has_any())

    def test_commit_renames_partial_into_place(self):
        partial = self.store.partial_path(3)
        partial.write_bytes(b"encoded")

        target = self.store.commit(3, partial)

        self.assertEqual(target, self.store.path(3))
        self.assertFalse(partial.exists())
        self.assertEqual(target.read_bytes(), b"encoded")

    def test_commit_refuses_empty_partial(self):
        partial = self.store.partial_path(3)
        partial.touch()

        with self.assertRaises(ValueError):
            self.store.commit(3, partial)
        self.assertFalse(self.store.path(3).exists())

    def test_partial_name_is_hidden_from_checkpoint_glob(self):
        self.assertEqual(self.store.partial_path(5).name, ".seg_005.partial.mp4")
        self.assertEqual(list(self.segments_dir.glob("seg_*.mp4")), [])

    def test_discard_partials(self):
        self.store.partial_path(0).write_bytes(b"x")
        self.store.partial_path(1).write_bytes(b"y")
        self.store.path(2).write_bytes(b"keep")

        removed = self.store.discard_partials()

        self.assertEqual(removed, 2)
        self.assertEqual([index for index, _ in self.store.list_all()], [2])


class TestWorkDirectory(unittest.TestCase):
    def test_work_dir_keyed_by_source_stem(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            work_dir = checkpoints.prepare_work_directory(root, Path("/captures/tape01.mkv"))

            self.assertEqual(work_dir.root, root / "tape01")
            self.assertTrue(work_dir.segments_dir.is_dir())
            self.assertTrue(work_dir.scratch_dir.is_dir())
            self.assertEqual(work_dir.config_path.name, "run_config.txt")
            self.assertEqual(work_dir.concat_manifest_path.name, "segments.txt")

    def test_lock_rejects_second_holder(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            work_dir = checkpoints.WorkDirectory(root=Path(temp_dir) / "tape01")

            with checkpoints.workspace_lock(work_dir):
                with self.assertRaises(WorkspaceLockedError):
                    with checkpoints.workspace_lock(work_dir):
                        pass

            # Released after the first holder exits.
            with checkpoints.workspace_lock(work_dir) as lock_path:
                self.assertTrue(lock_path.exists())

    def test_clear_segment_scratch_only_touches_that_segment(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            scratch = Path(temp_dir)
            stale = scratch / "seg_003_abc123"
            (stale / "frames").mkdir(parents=True)
            (stale / "frames" / "frame_00000001.jpg").write_bytes(b"x")
            other = scratch / "seg_004_def456"
            other.mkdir()

            checkpoints.clear_segment_scratch(scratch, 3)

            self.assertFalse(stale.exists())
            self.assertTrue(other.exists())


if __name__ == "__main__":
    unittest.main()
