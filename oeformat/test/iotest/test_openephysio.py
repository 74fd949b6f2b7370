"""
Tests of oeformat.io.openephysio
"""

import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

import numpy as np

from oeformat.core import EventChannel, IndexInconsistentError, SpikeChannel, WriteFailedError
from oeformat.format.continuous import map_continuous_file
from oeformat.format.layout import (
    BLOCK_SIZE,
    BYTES_PER_EVENT,
    HEADER_SIZE,
    events_dtype,
    read_file_header,
    spike_record_size,
    timestamps_dtype,
)
from oeformat.format.records import TEXT
from oeformat.format.structure import parse_structure
from oeformat.io import OpenEphysIO
from oeformat.test.generate_datasets import (
    SAMPLE_RATE,
    generate_channels,
    generate_signals,
    write_recording,
    write_session,
)
from oeformat.test.tools import assert_arrays_almost_equal, assert_arrays_equal


class TestOpenEphysIO(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.dirname = Path(self.tmpdir.name) / "session"

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_file_layout(self):
        write_session(self.dirname, generate_signals(2, 100))
        names = sorted(p.name for p in self.dirname.iterdir())
        self.assertEqual(
            names,
            [
                "100_example-data.timestamps",
                "100_example-data_CH1.continuous",
                "100_example-data_CH2.continuous",
                "all_channels.events",
                "messages.events",
                "structure.openephys",
            ],
        )

    def test_continuous_header(self):
        write_session(self.dirname, generate_signals(1, 100))
        info = read_file_header(self.dirname / "100_example-data_CH1.continuous")
        self.assertEqual(info["format"], "Open Ephys Data Format")
        self.assertEqual(info["channel"], "CH1")
        self.assertEqual(info["sampleRate"], SAMPLE_RATE)
        self.assertEqual(info["bitVolts"], 0.195)

    def test_two_full_blocks(self):
        signals = generate_signals(1, 2048)
        write_session(self.dirname, signals)
        filename = self.dirname / "100_example-data_CH1.continuous"
        self.assertEqual(filename.stat().st_size, HEADER_SIZE + 2 * (8 + 2 + 2 + 2048 + 10))

        blocks = map_continuous_file(filename)
        samples = blocks["samples"].reshape(-1) * 0.195
        assert_arrays_almost_equal(samples, signals[0], 0.195 / 2)

    def test_block_invariant_for_any_chunking(self):
        signals = generate_signals(2, 2500)
        for chunk_size in (1, 7, 1023, 1024, 1025, 3000):
            dirname = self.dirname / f"chunk{chunk_size}"
            write_session(dirname, signals, chunk_size=chunk_size)
            for name in ("CH1", "CH2"):
                size = (dirname / f"100_example-data_{name}.continuous").stat().st_size
                self.assertEqual((size - HEADER_SIZE) % BLOCK_SIZE, 0)
                self.assertEqual((size - HEADER_SIZE) // BLOCK_SIZE, 3)

    def test_padding(self):
        write_session(self.dirname, generate_signals(1, 1500) + 0.195 * 3000)
        blocks = map_continuous_file(self.dirname / "100_example-data_CH1.continuous")
        self.assertEqual(blocks.size, 2)
        self.assertTrue(np.all(blocks["samples"][1][1500 - 1024 :] == 0))
        self.assertTrue(np.all(blocks["samples"][1][: 1500 - 1024] != 0))
        self.assertTrue(np.all(blocks["nb_sample"] == 1024))

    def test_block_timestamps(self):
        write_session(self.dirname, generate_signals(1, 2048), chunk_size=300, first_sample_number=1000)
        blocks = map_continuous_file(self.dirname / "100_example-data_CH1.continuous")
        assert_arrays_equal(blocks["timestamp"].astype("int64"), np.array([1000, 2024]))
        assert_arrays_equal(blocks["rec_num"].astype("int64"), np.array([0, 0]))

        with open(self.dirname / "100_example-data.timestamps", "rb") as f:
            f.seek(HEADER_SIZE)
            sync = np.frombuffer(f.read(), dtype=timestamps_dtype)["timestamp"]
        assert_arrays_almost_equal(sync, np.array([1000, 2024]) / SAMPLE_RATE, 1e-12)

    def test_explicit_sync_timestamps(self):
        channels = generate_channels(1)
        writer = OpenEphysIO(self.dirname, channels)
        writer.open_files()
        timestamps = 10.0 + np.arange(1024) / SAMPLE_RATE
        writer.write_continuous(0, np.zeros(1024), 0, timestamps=timestamps)
        with self.assertRaises(ValueError):
            writer.write_continuous(0, np.zeros(10), 1024, timestamps=np.zeros(3))
        writer.close_files()

        with open(self.dirname / "100_example-data.timestamps", "rb") as f:
            f.seek(HEADER_SIZE)
            sync = np.frombuffer(f.read(), dtype=timestamps_dtype)["timestamp"]
        self.assertEqual(sync[0], 10.0)

    def test_empty_channel(self):
        writer = OpenEphysIO(self.dirname, generate_channels(1))
        writer.open_files()
        writer.close_files()
        self.assertEqual((self.dirname / "100_example-data_CH1.continuous").stat().st_size, HEADER_SIZE)
        index = parse_structure(self.dirname / "structure.openephys")
        stream = index.recordings[1].streams["100_example_data"]
        self.assertEqual(stream.start_timestamp, 0)
        self.assertEqual(stream.start_pos, HEADER_SIZE)

    def test_one_channel_left_empty(self):
        writer = OpenEphysIO(self.dirname, generate_channels(2))
        writer.open_files()
        writer.write_continuous(0, np.ones(100), 0)
        writer.close_files()
        for name in ("100_example-data_CH1.continuous", "100_example-data_CH2.continuous"):
            self.assertEqual((self.dirname / name).stat().st_size, HEADER_SIZE + BLOCK_SIZE)
        blocks = map_continuous_file(self.dirname / "100_example-data_CH2.continuous")
        self.assertEqual(blocks["timestamp"][0], 0)
        self.assertTrue(np.all(blocks["samples"] == 0))

    def test_events_and_messages(self):
        channels = generate_channels(1)
        writer = OpenEphysIO(self.dirname, channels, event_channel=EventChannel(SAMPLE_RATE))
        writer.open_files(recording_number=3)
        writer.write_event(500, state=True, line=2, source_id=100)
        writer.write_event(700, state=False, line=2, source_id=100)
        writer.write_event(800, event_type=TEXT, text="stimulus on")
        writer.write_message("hello", 900)
        writer.write_timestamp_sync_text(100, 0, SAMPLE_RATE, "Processor: Rhythm FPGA start time: 0@30000Hz")
        writer.close_files()

        filename = self.dirname / "all_channels.events"
        self.assertEqual(filename.stat().st_size, HEADER_SIZE + 2 * BYTES_PER_EVENT)
        with open(filename, "rb") as f:
            f.seek(HEADER_SIZE)
            events = np.frombuffer(f.read(), dtype=events_dtype)
        assert_arrays_equal(events["timestamp"].astype("int64"), np.array([500, 700]))
        assert_arrays_equal(events["event_id"].astype("int64"), np.array([1, 0]))
        assert_arrays_equal(events["processor_id"].astype("int64"), np.array([100, 100]))
        assert_arrays_equal(events["record_num"].astype("int64"), np.array([2, 2]))

        with open(self.dirname / "messages.events", encoding="utf-8") as f:
            lines = f.read().splitlines()
        self.assertEqual(
            lines, ["800, stimulus on", "900, hello", "0, Processor: Rhythm FPGA start time: 0@30000Hz"]
        )

    def test_event_without_event_channel(self):
        writer = OpenEphysIO(self.dirname, generate_channels(1))
        writer.open_files()
        with self.assertRaises(ValueError):
            writer.write_event(500, state=True)
        writer.close_files()

    def test_text_event_without_text(self):
        writer = OpenEphysIO(self.dirname, generate_channels(1), event_channel=EventChannel(SAMPLE_RATE))
        writer.open_files()
        with self.assertRaises(ValueError):
            writer.write_event(800, event_type=TEXT)
        writer.close_files()

    def test_spikes(self):
        channels = generate_channels(1)
        spike_channels = [SpikeChannel("Tetrode 1", SAMPLE_RATE, 4, 40, 0.195, 100, "example_data")]
        writer = OpenEphysIO(self.dirname, channels, spike_channels=spike_channels)
        writer.open_files()
        writer.write_spike(0, np.zeros((4, 40)), 1200)
        writer.write_spike(0, np.ones((4, 40)), 1300, sorted_id=1)
        writer.close_files()

        filename = self.dirname / "Tetrode1_example-data_.spikes"
        self.assertEqual(filename.stat().st_size, HEADER_SIZE + 2 * spike_record_size(4, 40))
        index = parse_structure(self.dirname / "structure.openephys")
        entry = index.recordings[1].streams["100_example_data"].spike_channels[0]
        self.assertEqual(entry.filename, "Tetrode1_example-data_.spikes")
        self.assertEqual((entry.num_channels, entry.num_samples, entry.position), (4, 40, HEADER_SIZE))

    def test_successive_recordings_append(self):
        channels = generate_channels(2)
        writer = OpenEphysIO(self.dirname, channels, event_channel=EventChannel(SAMPLE_RATE))
        write_recording(writer, generate_signals(2, 2048), recording_number=1)
        write_recording(writer, generate_signals(2, 1000), first_sample_number=9000, recording_number=2)

        size = (self.dirname / "100_example-data_CH1.continuous").stat().st_size
        self.assertEqual(size, HEADER_SIZE + 3 * BLOCK_SIZE)

        index = parse_structure(self.dirname / "structure.openephys")
        self.assertEqual(list(index.recordings.keys()), [1, 2])
        second = index.recordings[2].streams["100_example_data"]
        self.assertEqual(second.start_pos, HEADER_SIZE + 2 * BLOCK_SIZE)
        self.assertEqual(second.start_timestamp, 9000)
        self.assertEqual(second.timestamps_position, HEADER_SIZE + 2 * 8)

        blocks = map_continuous_file(self.dirname / "100_example-data_CH1.continuous")
        assert_arrays_equal(blocks["rec_num"].astype("int64"), np.array([0, 0, 1]))

        # recording numbers only go up
        with self.assertRaises(IndexInconsistentError):
            writer.open_files(recording_number=2)
        self.assertFalse(writer.is_open)

    def test_later_experiment(self):
        channels = generate_channels(1)
        writer = OpenEphysIO(self.dirname, channels, event_channel=EventChannel(SAMPLE_RATE))
        write_recording(writer, generate_signals(1, 10), experiment_number=2)
        names = sorted(p.name for p in self.dirname.iterdir())
        self.assertIn("100_example-data_CH1_2.continuous", names)
        self.assertIn("all_channels_2.events", names)
        self.assertIn("messages_2.events", names)
        self.assertIn("structure_2.openephys", names)
        index = parse_structure(self.dirname / "structure_2.openephys")
        self.assertEqual(index.number, 2)

    def test_write_before_open(self):
        writer = OpenEphysIO(self.dirname, generate_channels(1))
        with self.assertRaises(RuntimeError):
            writer.write_continuous(0, np.zeros(10), 0)
        # closing a writer that is not open does nothing
        writer.close_files()
        self.assertFalse(self.dirname.exists())

    def test_open_twice(self):
        writer = OpenEphysIO(self.dirname, generate_channels(1))
        writer.open_files()
        with self.assertRaises(RuntimeError):
            writer.open_files()
        writer.close_files()

    def test_directory_is_a_file(self):
        self.dirname.parent.mkdir(exist_ok=True)
        self.dirname.write_bytes(b"")
        writer = OpenEphysIO(self.dirname, generate_channels(1))
        with self.assertRaises(WriteFailedError):
            writer.open_files()

    def test_write_failure(self):
        writer = OpenEphysIO(self.dirname, generate_channels(1))
        writer.open_files()
        real_file = writer._continuous_files[0]
        broken = mock.Mock()
        broken.name = real_file.name
        broken.write.side_effect = OSError("No space left on device")
        writer._continuous_files[0] = broken
        try:
            with self.assertRaises(WriteFailedError):
                writer.write_continuous(0, np.zeros(10), 0)
        finally:
            writer._continuous_files[0] = real_file
            writer.close_files()

    def test_concurrent_producers(self):
        channels = generate_channels(4)
        signals = generate_signals(4, 5000)
        writer = OpenEphysIO(self.dirname, channels)
        writer.open_files()

        def produce(channel_index):
            for start in range(0, 5000, 333):
                writer.write_continuous(channel_index, signals[channel_index, start : start + 333], start)

        threads = [threading.Thread(target=produce, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        writer.close_files()

        for i, ch in enumerate(channels):
            blocks = map_continuous_file(self.dirname / f"100_example-data_{ch.name}.continuous")
            samples = blocks["samples"].reshape(-1)[:5000] * 0.195
            assert_arrays_almost_equal(samples, signals[i], 0.195 / 2)


if __name__ == "__main__":
    unittest.main()
