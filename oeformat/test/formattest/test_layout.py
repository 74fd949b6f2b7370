"""
Tests of the oeformat.format.layout module
"""

import logging
import tempfile
import time
import unittest
from pathlib import Path

import numpy as np

from oeformat.core import ContinuousChannel, EventChannel, SpikeChannel, Stream
from oeformat.format.layout import (
    BLOCK_HEADER_SIZE,
    BLOCK_SIZE,
    HEADER_SIZE,
    SPIKE_HEADER_SIZE,
    _base_spikes_dtype,
    check_format_version,
    clean_name,
    continuous_filename,
    events_filename,
    format_number,
    generate_date_string,
    generate_header,
    messages_filename,
    read_file_header,
    spike_record_size,
    spikes_filename,
    structure_filename,
    timestamps_filename,
)


class TestConstants(unittest.TestCase):
    def test_sizes(self):
        self.assertEqual(BLOCK_HEADER_SIZE, 12)
        self.assertEqual(BLOCK_SIZE, 8 + 2 + 2 + 1024 * 2 + 10)
        self.assertEqual(np.dtype(_base_spikes_dtype).itemsize, SPIKE_HEADER_SIZE)
        # 4 channels of 40 samples
        self.assertEqual(spike_record_size(4, 40), 42 + 4 * 40 * 2 + 4 * 4 + 4 * 2 + 2)


class TestHeader(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.dirname = Path(self.tmpdir.name)

    def tearDown(self):
        self.tmpdir.cleanup()

    def _write_and_read(self, ch):
        filename = self.dirname / "file.bin"
        header = generate_header(ch, date_string="15-Jun-2014 105345")
        self.assertEqual(len(header), HEADER_SIZE)
        with open(filename, "wb") as f:
            f.write(header)
        return read_file_header(filename)

    def test_continuous_header(self):
        ch = ContinuousChannel("CH1", 30000.0, 0.195, 100, "example_data")
        info = self._write_and_read(ch)
        self.assertEqual(info["format"], "Open Ephys Data Format")
        self.assertEqual(info["version"], "0.4")
        self.assertEqual(info["header_bytes"], 1024)
        self.assertEqual(info["date_created"], "15-Jun-2014 105345")
        self.assertEqual(info["channel"], "CH1")
        self.assertEqual(info["channelType"], "Continuous")
        self.assertEqual(info["sampleRate"], 30000.0)
        self.assertEqual(info["blockLength"], 1024)
        self.assertEqual(info["bitVolts"], 0.195)

    def test_event_header(self):
        info = self._write_and_read(EventChannel(30000.0))
        self.assertEqual(info["channel"], "Events")
        self.assertEqual(info["channelType"], "Event")
        self.assertEqual(info["blockLength"], 1024)

    def test_spike_header(self):
        info = self._write_and_read(SpikeChannel("Tetrode 1", 30000.0, 4, 40, 0.195, 100, "example_data"))
        self.assertEqual(info["electrode"], "Tetrode 1")
        self.assertEqual(info["num_channels"], 4)
        self.assertEqual(info["samplesPerSpike"], 40)

    def test_timestamps_header(self):
        info = self._write_and_read(Stream(100, "example_data", 30000.0))
        self.assertEqual(info["channelType"], "Timestamps")
        self.assertEqual(info["stream"], "100_example_data")

    def test_header_is_space_padded(self):
        header = generate_header(ContinuousChannel("CH1", 30000.0, 0.195, 100, "example_data"))
        self.assertTrue(header.startswith(b"header.format = 'Open Ephys Data Format'; \n"))
        self.assertTrue(header.endswith(b" "))

    def test_header_too_long(self):
        ch = ContinuousChannel("CH" * 600, 30000.0, 0.195, 100, "example_data")
        with self.assertRaises(ValueError):
            generate_header(ch)

    def test_date_string(self):
        t = time.strptime("2014-06-15 10:53:45", "%Y-%m-%d %H:%M:%S")
        self.assertEqual(generate_date_string(t), "15-Jun-2014 105345")


class TestFormatVersion(unittest.TestCase):
    def test_supported(self):
        self.assertTrue(check_format_version("0.4"))
        self.assertTrue(check_format_version("0.2"))

    def test_newer_version_warns(self):
        with self.assertLogs("oeformat.format.layout", level=logging.WARNING):
            self.assertFalse(check_format_version("0.6", "file.continuous"))

    def test_unparsable_version_warns(self):
        with self.assertLogs("oeformat.format.layout", level=logging.WARNING):
            self.assertFalse(check_format_version("not a version"))


class TestFileNames(unittest.TestCase):
    def setUp(self):
        self.ch = ContinuousChannel("CH 1", 30000.0, 0.195, 100, "example_data")
        self.sp = SpikeChannel("Tetrode 1", 30000.0, 4, 40, 0.195, 100, "example_data")

    def test_clean_name(self):
        self.assertEqual(clean_name("Rhythm data_A"), "Rhythmdata-A")

    def test_first_experiment(self):
        self.assertEqual(continuous_filename(self.ch), "100_example-data_CH1.continuous")
        self.assertEqual(timestamps_filename(Stream(100, "example_data", 30000.0)), "100_example-data.timestamps")
        self.assertEqual(events_filename(), "all_channels.events")
        self.assertEqual(spikes_filename(self.sp), "Tetrode1_example-data_.spikes")
        self.assertEqual(messages_filename(), "messages.events")
        self.assertEqual(structure_filename(), "structure.openephys")

    def test_later_experiment(self):
        self.assertEqual(continuous_filename(self.ch, 2), "100_example-data_CH1_2.continuous")
        self.assertEqual(events_filename(3), "all_channels_3.events")
        self.assertEqual(spikes_filename(self.sp, 2), "Tetrode1_example-data__2.spikes")
        self.assertEqual(messages_filename(2), "messages_2.events")
        self.assertEqual(structure_filename(2), "structure_2.openephys")

    def test_format_number(self):
        self.assertEqual(format_number(30000.0), "30000")
        self.assertEqual(format_number(0.195), "0.195")


if __name__ == "__main__":
    unittest.main()
