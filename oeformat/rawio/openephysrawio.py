"""
This module implements the reader of the legacy Open Ephys format, driven by
the structural index of an experiment (``structure.openephys``).

All recordings of a stream are played back as one concatenated timeline: the
sample cursor runs from 0 to the total number of samples of the stream and
wraps around at the end. Event timestamps are moved into the same timeline by
removing the gaps between recordings.

Both shapes of index are read (see :class:`oeformat.format.FormatVariant`):
the one written by :class:`oeformat.io.OpenEphysIO` and the legacy one where
start timestamps are probed from the block headers.

Usage::

    >>> from oeformat.rawio import OpenEphysRawIO
    >>> reader = OpenEphysRawIO('/tmp/session/structure.openephys')
    >>> reader.parse_header()
    >>> reader.select_stream(0)
    >>> sig = reader.read_signal(30000)  # pq.Quantity in uV, shape (30000, nchan)
    >>> events = reader.get_events_in_range(0, 30000)

"""

from pathlib import Path

import numpy as np
import quantities as pq

from oeformat.core.errors import IndexInconsistentError, MalformedRecordError, OEFileNotFoundError, OutOfRangeError
from oeformat.format.continuous import decode_samples, map_continuous_file, read_block, sample_dtype
from oeformat.format.layout import (
    BLOCK_LENGTH,
    BYTES_PER_EVENT,
    EVENT_HEADER_SIZE,
    FORMAT_NAME,
    RECORD_MARKER,
    check_format_version,
    events_dtype,
    messages_filename,
    read_file_header,
    spike_record_size,
    structure_filename,
    timestamps_dtype,
)
from oeformat.format.records import decode_events, decode_spikes, spike_waveforms
from oeformat.format.structure import load_structure
from .baserawio import (
    BaseRawIO,
    _signal_channel_dtype,
    _signal_stream_dtype,
    _spike_channel_dtype,
    error_header,
)


error_stream = "No stream selected, do select_stream() first"


class OpenEphysRawIO(BaseRawIO):
    """
    Class for reading Open Ephys format data

    Parameters
    ----------
    filename: str | Path
        The structural index file, or the directory holding
        ``structure.openephys``

    Notes
    -----
    Files are memory mapped read-only and never locked: they must not be
    appended to while they are read.

    Recording numbers are 1-based in the index; the recording number fields
    of blocks, events and spikes hold ``number - 1``.
    """

    extensions = ["openephys", "continuous", "events", "spikes", "timestamps"]
    rawmode = "one-file"

    def __init__(self, filename=""):
        BaseRawIO.__init__(self)
        filename = Path(filename)
        if filename.is_dir():
            filename = filename / structure_filename()
        self.filename = filename
        self.dirname = filename.parent

        self.stream_index = None
        self.cursor = 0
        self.total_samples = 0
        self.total_blocks = 0
        self._segments = []

    def _source_name(self):
        return str(self.filename)

    def _parse_header(self):
        self._index = index = load_structure(self.filename)
        check_format_version(index.version, self.filename.name)

        self._streams = []
        signal_streams = []
        signal_channels = []
        spike_channels = []
        for key in index.stream_keys():
            recordings = index.stream_recordings(key)
            info = self._explore_stream(key, recordings)
            self._streams.append(info)

            signal_streams.append((info["name"], key, info["sample_rate"], info["num_samples"]))
            for name, bit_volts in info["channels"]:
                chan_id = f"{key}#{name}"
                signal_channels.append((name, chan_id, info["sample_rate"], "int16", "uV", bit_volts, 0.0, key))
            for sp in recordings[0][1].spike_channels:
                spike_channels.append(
                    (sp.name, f"{key}#{sp.name}", key, sp.num_channels, sp.num_samples, info["sample_rate"])
                )

        self.header = {}
        self.header["experiment_number"] = index.number
        self.header["format_variant"] = index.variant
        self.header["nb_recording"] = len(index.recordings)
        self.header["signal_streams"] = np.array(signal_streams, dtype=_signal_stream_dtype)
        self.header["signal_channels"] = np.array(signal_channels, dtype=_signal_channel_dtype)
        self.header["spike_channels"] = np.array(spike_channels, dtype=_spike_channel_dtype)
        self.header["streams"] = self.fill_record_info()

        self._events = {}
        for info in self._streams:
            self._events[info["key"]] = self._load_stream_events(info)

    def _explore_stream(self, key, recordings):
        """
        Check every recording of a stream against the headers of its files
        and collect what playback needs.
        """
        first = recordings[0][1]
        channel_names = [ch.name for ch in first.channels]
        for rec_id, entry in recordings[1:]:
            if [ch.name for ch in entry.channels] != channel_names:
                raise IndexInconsistentError(
                    f"Stream {key} has channels {[ch.name for ch in entry.channels]} in recording {rec_id}, "
                    f"{channel_names} in recording {recordings[0][0]}"
                )

        sample_rate = first.sample_rate
        for ch in first.channels:
            file_header = self._read_data_file_header(ch.filename)
            if sample_rate <= 0:
                # legacy index without samplerate
                sample_rate = file_header.get("sampleRate", 0.0)
            elif file_header.get("sampleRate", sample_rate) != sample_rate:
                self.logger.warning(
                    f"{ch.filename} has sampleRate {file_header['sampleRate']}, the index says {sample_rate}"
                )

        return {
            "key": key,
            "name": first.name,
            "source_node_id": first.source_node_id,
            "source_node_name": first.source_node_name,
            "sample_rate": float(sample_rate),
            "num_samples": int(sum(entry.num_samples for _, entry in recordings)),
            "channels": [(ch.name, ch.bit_volts) for ch in first.channels],
            "recordings": recordings,
        }

    def _read_data_file_header(self, filename):
        path = self.dirname / filename
        try:
            file_header = read_file_header(path)
        except FileNotFoundError as e:
            raise OEFileNotFoundError(f"Data file {path} listed in the index not found") from e
        if file_header.get("format") != FORMAT_NAME:
            raise IndexInconsistentError(f"{path} is not an {FORMAT_NAME} file")
        check_format_version(file_header.get("version", ""), path.name)
        return file_header

    def fill_record_info(self):
        """
        Per stream description: name, sample rate, total number of samples
        over every recording, channels with their bit_volts and per
        recording start timestamp and sample count.
        """
        record_info = []
        for info in self._streams:
            record_info.append(
                {
                    "key": info["key"],
                    "name": info["name"],
                    "source_node_id": info["source_node_id"],
                    "source_node_name": info["source_node_name"],
                    "sample_rate": info["sample_rate"],
                    "num_samples": info["num_samples"],
                    "channels": list(info["channels"]),
                    "recordings": [
                        (rec_id, entry.start_timestamp, entry.num_samples) for rec_id, entry in info["recordings"]
                    ],
                }
            )
        return record_info

    # events

    def _recording_offsets(self, recordings):
        """
        Offset to subtract from the timestamps of each recording so that they
        land on the concatenated timeline: the start timestamp of the first
        recording plus the gaps between the following ones.
        """
        offsets = {}
        previous = None
        for rec_id, entry in recordings:
            if previous is None:
                offset = entry.start_timestamp or 0
            else:
                prev_offset, prev_entry = previous
                gap = (entry.start_timestamp or 0) - ((prev_entry.start_timestamp or 0) + prev_entry.num_samples)
                offset = prev_offset + gap
            offsets[rec_id] = offset
            previous = (offset, entry)
        return offsets

    def _load_stream_events(self, info):
        recordings = info["recordings"]
        filenames = {entry.events_filename for _, entry in recordings if entry.events_filename is not None}
        if not filenames:
            return np.zeros(0, dtype=events_dtype)

        raw = np.concatenate([self._read_events_file(filename) for filename in sorted(filenames)])
        offsets = self._recording_offsets(recordings)

        # on disk recording numbers are 0-based
        rec_ids = raw["record_num"].astype("int64") + 1
        keep = np.isin(rec_ids, list(offsets.keys()))
        if not np.all(keep):
            self.logger.debug(f"{np.sum(~keep)} events of stream {info['key']} belong to unknown recordings")
        events = raw[keep].copy()
        corrections = np.array([offsets[rec_id] for rec_id in rec_ids[keep]], dtype="int64")
        events["timestamp"] = events["timestamp"] - corrections
        return events

    def _read_events_file(self, filename):
        path = self.dirname / filename
        if not path.exists():
            raise OEFileNotFoundError(f"Event file {path} listed in the index not found")
        with open(path, mode="rb") as f:
            f.seek(EVENT_HEADER_SIZE)
            buffer = f.read()
        remainder = len(buffer) % BYTES_PER_EVENT
        if remainder:
            self.logger.warning(f"{path.name} ends with an incomplete event record of {remainder} bytes, ignored")
            buffer = buffer[: len(buffer) - remainder]
        if not buffer:
            self.logger.warning(f"{path.name} holds no event")
        return decode_events(buffer).copy()

    def get_events_in_range(self, start, stop):
        """
        Events of the selected stream between samples ``start`` and ``stop``
        (inclusive) of the wrapping cursor space. Timestamps are returned in
        the same unwrapped space as ``start``.
        """
        self._check_stream()
        events = self._events[self._streams[self.stream_index]["key"]]
        if self.total_samples == 0:
            return events[:0].copy()
        lo = start % self.total_samples
        hi = stop % self.total_samples
        mask = (events["timestamp"] >= lo) & (events["timestamp"] <= hi)
        selected = events[mask].copy()
        selected["timestamp"] += (start // self.total_samples) * self.total_samples
        return selected

    # continuous

    def select_stream(self, stream_index):
        """
        Memory map the continuous files of one stream and reset the cursor.
        Mappings of the previously selected stream are released.
        """
        if not self.is_header_parsed:
            raise RuntimeError(error_header)
        if not 0 <= stream_index < len(self._streams):
            raise OutOfRangeError(f"Stream {stream_index} out of range, {len(self._streams)} streams")

        self.close()
        info = self._streams[stream_index]
        segments = []
        first_block = 0
        for rec_id, entry in info["recordings"]:
            num_blocks = entry.num_samples // BLOCK_LENGTH
            blocks = [
                map_continuous_file(self.dirname / ch.filename, offset=ch.position, num_blocks=num_blocks)
                for ch in entry.channels
            ]
            segments.append((first_block, num_blocks, blocks))
            first_block += num_blocks

        self._segments = segments
        self._segment_starts = np.array([s[0] for s in segments], dtype="int64")
        self.stream_index = stream_index
        self.total_blocks = first_block
        self.total_samples = first_block * BLOCK_LENGTH
        self.cursor = 0
        self.logger.debug(f"Selected stream {info['key']}: {self.total_samples} samples in {len(segments)} recordings")

    def _check_stream(self):
        if self.stream_index is None:
            raise RuntimeError(error_stream)

    @property
    def channel_count(self):
        self._check_stream()
        return len(self._streams[self.stream_index]["channels"])

    def seek_to(self, sample_index):
        """Move the cursor, wrapping around the concatenated recordings."""
        self._check_stream()
        if self.total_samples == 0:
            self.cursor = 0
        else:
            self.cursor = int(sample_index) % self.total_samples

    def _locate_block(self, block_index):
        """``(blocks, local_index, num_blocks)`` of the recording holding a block."""
        seg = int(np.searchsorted(self._segment_starts, block_index, side="right")) - 1
        first_block, num_blocks, blocks = self._segments[seg]
        return blocks, block_index - first_block, num_blocks

    def read_block(self, block_index, channel_index=0, out=None):
        """
        ``(timestamp, samples)`` of one block of a channel of the selected
        stream, ``block_index`` counting over the concatenated recordings.
        """
        self._check_stream()
        if not 0 <= block_index < self.total_blocks:
            raise OutOfRangeError(f"Block {block_index} out of range, the stream has {self.total_blocks} blocks")
        blocks, local_index, _ = self._locate_block(block_index)
        return read_block(blocks[channel_index], local_index, out=out)

    def read_data(self, num_samples):
        """
        Read raw int16 samples of every channel of the selected stream from
        the cursor, shape (num_read, num_channels). No more samples than
        what remains before the end of the stream are read; the cursor then
        wraps to 0.
        """
        self._check_stream()
        num_samples = max(0, min(int(num_samples), self.total_samples - self.cursor))
        nb_channel = self.channel_count
        data = np.empty((num_samples, nb_channel), dtype=sample_dtype)

        filled = 0
        block_index = self.cursor // BLOCK_LENGTH
        offset = self.cursor % BLOCK_LENGTH
        while filled < num_samples:
            blocks, local_index, num_blocks = self._locate_block(block_index)
            # remainder of the current block then whole blocks, up to the end of this recording
            n_blocks = min(num_blocks - local_index, -(-(num_samples - filled + offset) // BLOCK_LENGTH))
            n = min(n_blocks * BLOCK_LENGTH - offset, num_samples - filled)
            sl = slice(local_index, local_index + n_blocks)
            for c in range(nb_channel):
                bad = np.nonzero(np.any(blocks[c]["markers"][sl] != RECORD_MARKER, axis=1))[0]
                if bad.size:
                    raise MalformedRecordError(
                        f"Corrupted record marker at block {block_index + int(bad[0])} of channel {c}"
                    )
                samples = blocks[c]["samples"][sl].reshape(-1)
                data[filled : filled + n, c] = samples[offset : offset + n]
            filled += n
            offset = 0
            block_index += n_blocks

        self.cursor += num_samples
        if self.cursor >= self.total_samples:
            self.cursor = 0
        return data

    def convert_channel(self, raw, channel_index, dtype="float32"):
        """Scale raw int16 values of one channel of the selected stream to uV."""
        self._check_stream()
        _, bit_volts = self._streams[self.stream_index]["channels"][channel_index]
        return decode_samples(raw, bit_volts, dtype=dtype)

    def read_signal(self, num_samples, dtype="float32"):
        """``read_data`` scaled to uV, as a pq.Quantity of shape (num_read, num_channels)."""
        raw = self.read_data(num_samples)
        sig = np.empty(raw.shape, dtype=dtype)
        for c in range(raw.shape[1]):
            sig[:, c] = self.convert_channel(raw[:, c], c, dtype=dtype)
        return pq.Quantity(sig, units=pq.uV)

    def get_block_timestamps(self):
        """
        Synchronized timestamp (s) of the first sample of every block of the
        selected stream, from its .timestamps file. Empty when the index has
        none (legacy index).
        """
        self._check_stream()
        _, first = self._streams[self.stream_index]["recordings"][0]
        if first.timestamps_filename is None:
            return np.zeros(0, dtype="float64")
        path = self.dirname / first.timestamps_filename
        if not path.exists():
            raise OEFileNotFoundError(f"Timestamps file {path} listed in the index not found")
        with open(path, mode="rb") as f:
            f.seek(first.timestamps_position)
            buffer = f.read()
        itemsize = np.dtype(timestamps_dtype).itemsize
        buffer = buffer[: len(buffer) - len(buffer) % itemsize]
        return np.frombuffer(buffer, dtype=timestamps_dtype)["timestamp"].copy()

    # spikes and messages

    def get_spikes(self, spike_channel_name):
        """
        Spikes of one electrode of the selected stream over every recording.

        Returns
        -------
        records: structured array
            Raw records (timestamps, ids, gains, thresholds, recording number)
        waveforms: pq.Quantity (n_spikes, num_channels, num_samples)
            Waveforms in uV
        """
        self._check_stream()
        _, first = self._streams[self.stream_index]["recordings"][0]
        entries = [sp for sp in first.spike_channels if sp.name == spike_channel_name]
        if not entries:
            raise IndexInconsistentError(
                f"No spike channel {spike_channel_name!r} in stream {self._streams[self.stream_index]['key']}"
            )
        sp = entries[0]

        path = self.dirname / sp.filename
        if not path.exists():
            raise OEFileNotFoundError(f"Spike file {path} listed in the index not found")
        with open(path, mode="rb") as f:
            f.seek(sp.position)
            buffer = f.read()

        size = spike_record_size(sp.num_channels, sp.num_samples)
        remainder = len(buffer) % size
        if remainder:
            self.logger.warning(f"{path.name} ends with an incomplete spike record of {remainder} bytes, ignored")
            buffer = buffer[: len(buffer) - remainder]

        records = decode_spikes(buffer, sp.num_channels, sp.num_samples).copy()
        waveforms = spike_waveforms(records, sp.num_channels, sp.num_samples, sp.bit_volts)
        return records, pq.Quantity(waveforms, units=pq.uV)

    def read_messages(self):
        """``[(timestamp, text)]`` of the messages file of the experiment."""
        if not self.is_header_parsed:
            raise RuntimeError(error_header)
        path = self.dirname / messages_filename(self._index.number)
        if not path.exists():
            return []

        messages = []
        with open(path, mode="r", encoding="utf-8") as f:
            for line in f:
                line = line.rstrip("\n")
                if not line:
                    continue
                timestamp, sep, text = line.partition(", ")
                if not sep:
                    self.logger.warning(f"Unreadable line in {path.name}: {line!r}")
                    continue
                messages.append((int(timestamp), text))
        return messages

    def close(self):
        """Release the memory maps of the selected stream."""
        self._segments = []
        self._segment_starts = np.zeros(0, dtype="int64")
        self.stream_index = None
        self.total_samples = 0
        self.total_blocks = 0
        self.cursor = 0
