"""
Class for writing data in the legacy Open Ephys format.

Each continuous channel goes to its own .continuous file, made of blocks of
1024 samples. Events of all channels share one .events file, each electrode
has its own .spikes file and text events go to a plain text messages file.
For each stream the synchronized timestamp (seconds) of every block is
written to a .timestamps file. When the recording is closed, a structural
index (``structure.openephys``) listing every file and the byte position
where the recording starts is written or appended to.

Files are opened in append mode so that successive recordings of an
experiment go to the same files; a header is only written when the file is
created.

Usage::

    >>> from oeformat.core import ContinuousChannel, EventChannel
    >>> from oeformat.io import OpenEphysIO
    >>> chans = [ContinuousChannel(f'CH{i}', 30000., 0.195, 100, 'example_data') for i in range(4)]
    >>> writer = OpenEphysIO('/tmp/session', chans, event_channel=EventChannel(30000.))
    >>> writer.open_files(experiment_number=1, recording_number=1)
    >>> for i in range(4):
    ...     writer.write_continuous(i, samples_uV[i], first_sample_number=0)
    >>> writer.write_event(timestamp=512, state=True, line=0)
    >>> writer.close_files()

"""

import os
import threading

import numpy as np

from oeformat.core.channels import group_streams
from oeformat.core.errors import IndexInconsistentError, WriteFailedError
from oeformat.format.continuous import encode_samples, pack_block_header, sample_dtype
from oeformat.format.layout import (
    BLOCK_LENGTH,
    RECORD_MARKER,
    continuous_filename,
    events_filename,
    generate_header,
    messages_filename,
    spikes_filename,
    structure_filename,
    timestamps_dtype,
    timestamps_filename,
)
from oeformat.format.records import TEXT, TTL, encode_event, encode_spike
from oeformat.format.structure import (
    ChannelEntry,
    RecordingEntry,
    SpikeChannelEntry,
    StreamEntry,
    last_recording_number,
    write_structure,
)
from .baseio import BaseIO


class OpenEphysIO(BaseIO):
    """
    Writer of the legacy Open Ephys format.

    Parameters
    ----------
    dirname: str | Path
        Directory of the experiment, created if needed
    continuous_channels: list of ContinuousChannel
        Channels written with ``write_continuous(channel_index, ...)``,
        ``channel_index`` being the position in this list
    event_channel: EventChannel | None
        Enables ``write_event()``
    spike_channels: list of SpikeChannel
        Electrodes written with ``write_spike(electrode_index, ...)``

    Notes
    -----
    All disk writes of one writer go through one lock, so several producer
    threads can push data; each call blocks for the duration of its write.
    """

    extensions = ["continuous", "events", "spikes", "timestamps", "openephys"]

    def __init__(self, dirname, continuous_channels=(), event_channel=None, spike_channels=()):
        BaseIO.__init__(self, dirname)
        self.continuous_channels = list(continuous_channels)
        self.event_channel = event_channel
        self.spike_channels = list(spike_channels)
        self.streams = group_streams(self.continuous_channels, event_channel, self.spike_channels)

        # the first channel of a stream drives its .timestamps file
        self._reference_channels = {}
        for stream in self.streams:
            if stream.continuous_channels:
                ref = stream.continuous_channels[0]
                self._reference_channels[self.continuous_channels.index(ref)] = stream.key

        self._lock = threading.Lock()
        self.is_open = False
        self.experiment_number = 0
        self.recording_number = 0
        self._reset_state()

    def _reset_state(self):
        self._continuous_files = []
        self._timestamp_files = {}
        self._spike_files = []
        self._event_file = None
        self._message_file = None
        self._block_fill = [0] * len(self.continuous_channels)
        self._samples_since_last_timestamp = [0] * len(self.continuous_channels)
        self._block_sync_timestamp = [0.0] * len(self.continuous_channels)
        self._blocks_written = [0] * len(self.continuous_channels)
        self._first_block_sample = [None] * len(self.continuous_channels)
        self._stream_entries = {}
        self._recording = None

    @property
    def index_filename(self):
        return self.dirname / structure_filename(self.experiment_number)

    def open_files(self, experiment_number=1, recording_number=1):
        """
        Open (or create) every file of the recording.

        ``recording_number`` is 1-based and must be higher than any recording
        already listed in the index of the experiment.
        """
        if self.is_open:
            raise RuntimeError("Files are already open, call close_files() first")

        try:
            self.dirname.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise WriteFailedError(f"Cannot create directory {self.dirname}") from e

        last = last_recording_number(self.dirname / structure_filename(experiment_number))
        if recording_number <= last:
            raise IndexInconsistentError(
                f"Recording {recording_number} cannot follow recording {last} of experiment {experiment_number}"
            )

        self._reset_state()
        self.experiment_number = int(experiment_number)
        self.recording_number = int(recording_number)
        self._recording = RecordingEntry(self.recording_number)

        try:
            self._open_all_files()
        except BaseException:
            self._close_handles()
            raise

        self.is_open = True
        self.logger.debug(f"Opened recording {recording_number} of experiment {experiment_number} in {self.dirname}")

    def _open_all_files(self):
        exp = self.experiment_number

        for stream in self.streams:
            entry = StreamEntry(stream.source_node_id, stream.name, stream.sample_rate, stream.source_node_name)
            self._stream_entries[stream.key] = entry

        if self.event_channel is not None:
            self._event_file, _ = self._open_data_file(events_filename(exp), self.event_channel)

        self._message_file, _ = self._open_data_file(messages_filename(exp), None)

        for ch in self.continuous_channels:
            filename = continuous_filename(ch, exp)
            fid, position = self._open_data_file(filename, ch)
            self._continuous_files.append(fid)
            self._stream_entries[ch.stream_key].channels.append(ChannelEntry(ch.name, ch.bit_volts, filename, position))

        for stream in self.streams:
            entry = self._stream_entries[stream.key]
            if stream.continuous_channels:
                filename = timestamps_filename(stream, exp)
                fid, position = self._open_data_file(filename, stream)
                self._timestamp_files[stream.key] = fid
                entry.timestamps_filename = filename
                entry.timestamps_position = position
            if stream.event_channel is not None:
                entry.events_filename = events_filename(exp)

        for sp in self.spike_channels:
            filename = spikes_filename(sp, exp)
            fid, position = self._open_data_file(filename, sp)
            self._spike_files.append(fid)
            self._stream_entries[sp.stream_key].spike_channels.append(
                SpikeChannelEntry(sp.name, filename, sp.num_channels, sp.num_samples, position, sp.channel_bit_volts)
            )

        for entry in self._stream_entries.values():
            self._recording.add_stream(entry)

    def _open_data_file(self, filename, ch):
        """
        Open a file in append mode. A new file gets the text header of ``ch``
        (no header when ``ch`` is None). A file whose header could not be
        written is removed.
        """
        path = self.dirname / filename
        self.logger.debug(f"Opening file: {path}")
        header = None if ch is None else generate_header(ch)

        file_exists = path.exists()
        with self._lock:
            try:
                fid = open(path, mode="ab")
            except OSError as e:
                raise WriteFailedError(f"Cannot open {path}") from e

            if not file_exists and header is not None:
                try:
                    fid.write(header)
                    fid.flush()
                except OSError as e:
                    fid.close()
                    path.unlink(missing_ok=True)
                    raise WriteFailedError(f"Cannot write header of {path}") from e
                self.logger.debug(f"Wrote header of {filename}")
            elif file_exists:
                self.logger.debug(f"{filename} already exists, appending")

            fid.seek(0, os.SEEK_END)
            position = fid.tell()
        return fid, position

    def _check_open(self):
        if not self.is_open:
            raise RuntimeError("Files are not open, call open_files() first")

    def _write(self, fid, data):
        with self._lock:
            try:
                fid.write(data)
            except OSError as e:
                raise WriteFailedError(f"Cannot write to {fid.name}") from e

    # continuous

    def write_continuous(self, channel_index, samples, first_sample_number, timestamps=None):
        """
        Append samples (uV) to a continuous channel.

        Parameters
        ----------
        channel_index: int
            Position of the channel in ``continuous_channels``
        samples: array
            Float samples in uV
        first_sample_number: int
            Sample number of ``samples[0]`` in the acquisition clock
        timestamps: array | None
            Synchronized timestamps (s) of each sample. When None they are
            computed from the sample numbers and the sampling rate.
        """
        self._check_open()
        ch = self.continuous_channels[channel_index]
        encoded = encode_samples(np.asarray(samples).ravel(), ch.bit_volts)
        if timestamps is not None:
            timestamps = np.asarray(timestamps, dtype="float64").ravel()
            if timestamps.size != encoded.size:
                raise ValueError(f"{timestamps.size} timestamps given for {encoded.size} samples")

        self._samples_since_last_timestamp[channel_index] = 0
        first_sample_number = int(first_sample_number)

        written = 0
        while written < encoded.size:
            fill = self._block_fill[channel_index]
            num_to_write = min(encoded.size - written, BLOCK_LENGTH - fill)

            if fill == 0:
                sample_number = first_sample_number + self._samples_since_last_timestamp[channel_index]
                if timestamps is None:
                    sync_timestamp = sample_number / ch.sample_rate
                else:
                    sync_timestamp = timestamps[written]
                self._start_block(channel_index, sample_number, sync_timestamp)

            self._write(self._continuous_files[channel_index], encoded[written : written + num_to_write].tobytes())
            written += num_to_write
            self._samples_since_last_timestamp[channel_index] += num_to_write

            fill += num_to_write
            if fill == BLOCK_LENGTH:
                self._end_block(channel_index)
                fill = 0
            self._block_fill[channel_index] = fill

    def _start_block(self, channel_index, sample_number, sync_timestamp):
        fid = self._continuous_files[channel_index]
        self._write(fid, pack_block_header(sample_number, self.recording_number - 1))
        self._block_sync_timestamp[channel_index] = sync_timestamp
        if self._first_block_sample[channel_index] is None:
            self._first_block_sample[channel_index] = sample_number

        stream_key = self._reference_channels.get(channel_index)
        if stream_key is not None:
            entry = self._stream_entries[stream_key]
            if entry.start_timestamp is None:
                entry.start_timestamp = sample_number

    def _end_block(self, channel_index):
        self._write(self._continuous_files[channel_index], RECORD_MARKER.tobytes())
        self._blocks_written[channel_index] += 1

        stream_key = self._reference_channels.get(channel_index)
        if stream_key is not None:
            ts = np.array([(self._block_sync_timestamp[channel_index],)], dtype=timestamps_dtype)
            self._write(self._timestamp_files[stream_key], ts.tobytes())

    def _pad_block(self, channel_index):
        fill = self._block_fill[channel_index]
        zeros = np.zeros(BLOCK_LENGTH - fill, dtype=sample_dtype)
        self._write(self._continuous_files[channel_index], zeros.tobytes())
        self._end_block(channel_index)
        self._block_fill[channel_index] = 0

    def _align_stream_blocks(self, stream):
        """
        Append zero blocks to the channels of a stream that received fewer
        blocks than the others, so that every channel of the stream starts
        the next recording at the same block.
        """
        indexes = [self.continuous_channels.index(ch) for ch in stream.continuous_channels]
        longest = max(indexes, key=lambda i: self._blocks_written[i])
        num_blocks = self._blocks_written[longest]
        first_sample = self._first_block_sample[longest]
        for i in indexes:
            while self._blocks_written[i] < num_blocks:
                sample_number = first_sample + self._blocks_written[i] * BLOCK_LENGTH
                self._start_block(i, sample_number, sample_number / stream.sample_rate)
                self._write(self._continuous_files[i], np.zeros(BLOCK_LENGTH, dtype=sample_dtype).tobytes())
                self._end_block(i)

    # events, spikes, messages

    def write_event(self, timestamp, event_type=TTL, source_id=0, state=False, line=0, text=None):
        """
        Append one event. TTL events go to the shared event file, TEXT events
        to the messages file.
        """
        self._check_open()
        if event_type == TEXT:
            if text is None:
                raise ValueError("A TEXT event needs a text")
            self.write_message(text, timestamp)
            return
        if self._event_file is None:
            raise ValueError("This writer has no event channel")
        record = encode_event(timestamp, event_type, source_id, state, line, self.recording_number - 1)
        self._write(self._event_file, record)

    def write_spike(self, electrode_index, waveform, timestamp, sorted_id=0, thresholds=None):
        """
        Append one spike of electrode ``electrode_index``, ``waveform`` in uV
        with shape (num_channels, num_samples).
        """
        self._check_open()
        sp = self.spike_channels[electrode_index]
        record = encode_spike(
            sp,
            waveform,
            timestamp,
            self.recording_number - 1,
            source_id=sp.source_node_id,
            sorted_id=sorted_id,
            electrode_index=electrode_index,
            thresholds=thresholds,
        )
        self._write(self._spike_files[electrode_index], record)

    def write_message(self, text, timestamp):
        self._check_open()
        line = f"{int(timestamp)}, {text}\n"
        self._write(self._message_file, line.encode("utf-8"))

    def write_timestamp_sync_text(self, stream_id, timestamp, sample_rate, text):
        """Log the synchronization message of a stream in the messages file."""
        self.write_message(text, timestamp)

    # closing

    def close_files(self):
        """
        Zero pad the last block of every continuous channel, pad the channels
        of a stream to the same number of blocks, close every file and append
        the recording to the structural index.
        """
        if not self.is_open:
            return

        try:
            for channel_index, fill in enumerate(self._block_fill):
                if fill > 0:
                    self._pad_block(channel_index)
            for stream in self.streams:
                if stream.continuous_channels:
                    self._align_stream_blocks(stream)
        finally:
            self.is_open = False
            self._close_handles()

        for entry in self._recording.streams.values():
            if entry.start_timestamp is None:
                entry.start_timestamp = 0

        try:
            write_structure(self.index_filename, self._recording, self.experiment_number)
        except OSError as e:
            raise WriteFailedError(f"Cannot write index {self.index_filename}") from e
        self.logger.debug(f"Closed recording {self.recording_number} of experiment {self.experiment_number}")

    def _close_handles(self):
        handles = list(self._continuous_files) + list(self._timestamp_files.values()) + list(self._spike_files)
        handles += [fid for fid in (self._event_file, self._message_file) if fid is not None]
        self._continuous_files = []
        self._timestamp_files = {}
        self._spike_files = []
        self._event_file = None
        self._message_file = None

        errors = []
        for fid in handles:
            with self._lock:
                try:
                    fid.close()
                except OSError as e:
                    errors.append((fid.name, e))
        if errors:
            names = ", ".join(name for name, _ in errors)
            raise WriteFailedError(f"Cannot close {names}") from errors[0][1]
