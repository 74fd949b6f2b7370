"""
Structural index of an experiment: the XML side-car file listing, for each
recording, the streams, the files of their channels and the byte position
where the recording starts in each file.

Two shapes of index exist (see :class:`FormatVariant`)::

    <EXPERIMENT version="0.4" number="1">
      <RECORDING number="1">
        <STREAM source_node_id="100" source_node_name="Rhythm FPGA" name="example_data"
                sample_rate="30000" start_timestamp="0">
          <CHANNEL name="CH1" bitVolts="0.195" filename="100_example-data_CH1.continuous" position="1024"/>
          <SPIKECHANNEL name="Electrode 1" filename="..." num_channels="4" num_samples="40" .../>
          <EVENTS filename="all_channels.events"/>
          <TIMESTAMPS filename="100_example-data.timestamps" position="1024"/>
        </STREAM>
      </RECORDING>
    </EXPERIMENT>

and the legacy one, where start timestamps are absent and must be probed
from the block headers of the first channel file::

    <EXPERIMENT version="0.4" number="1">
      <RECORDING number="1" samplerate="30000">
        <PROCESSOR id="100">
          <CHANNEL name="CH1" bitVolts="0.195" filename="100_CH1.continuous" position="1024"/>
        </PROCESSOR>
      </RECORDING>
    </EXPERIMENT>

Recording numbers of the index are 1-based. The recording number fields of
the binary records hold ``number - 1``.
"""

import logging
import os
from pathlib import Path
from xml.etree import ElementTree

import numpy as np

from oeformat.core.errors import IndexInconsistentError, OEFileNotFoundError
from .continuous import map_continuous_file
from .layout import (
    BLOCK_LENGTH,
    BLOCK_SIZE,
    FORMAT_VERSION,
    HEADER_SIZE,
    FormatVariant,
    events_filename,
    format_number,
)


logger = logging.getLogger(__name__)


class ChannelEntry:
    def __init__(self, name, bit_volts, filename, position):
        self.name = name
        self.bit_volts = float(bit_volts)
        self.filename = filename
        self.position = int(position)

    def to_element(self):
        return ElementTree.Element(
            "CHANNEL",
            name=self.name,
            bitVolts=format_number(self.bit_volts),
            filename=self.filename,
            position=str(self.position),
        )


class SpikeChannelEntry:
    def __init__(self, name, filename, num_channels, num_samples, position, bit_volts=None):
        self.name = name
        self.filename = filename
        self.num_channels = int(num_channels)
        self.num_samples = int(num_samples)
        self.position = int(position)
        self.bit_volts = None if bit_volts is None else tuple(float(bv) for bv in bit_volts)

    def to_element(self):
        attrib = dict(
            name=self.name,
            filename=self.filename,
            num_channels=str(self.num_channels),
            num_samples=str(self.num_samples),
            position=str(self.position),
        )
        if self.bit_volts is not None:
            attrib["bitVolts"] = ",".join(format_number(bv) for bv in self.bit_volts)
        return ElementTree.Element("SPIKECHANNEL", attrib)


class StreamEntry:
    """
    One stream inside one recording. ``num_samples`` is derived once every
    recording of the index is known, see :func:`compute_sample_counts`.
    """

    def __init__(self, source_node_id, name, sample_rate, source_node_name="", start_timestamp=None):
        self.source_node_id = int(source_node_id)
        self.name = name
        self.sample_rate = float(sample_rate)
        self.source_node_name = source_node_name
        self.start_timestamp = start_timestamp
        self.channels = []
        self.spike_channels = []
        self.events_filename = None
        self.timestamps_filename = None
        self.timestamps_position = None
        self.num_samples = 0

    @property
    def key(self):
        if self.name:
            return f"{self.source_node_id}_{self.name}"
        return str(self.source_node_id)

    @property
    def start_pos(self):
        if not self.channels:
            return None
        return self.channels[0].position

    def to_element(self):
        stream = ElementTree.Element(
            "STREAM",
            source_node_id=str(self.source_node_id),
            source_node_name=self.source_node_name,
            name=self.name,
            sample_rate=format_number(self.sample_rate),
            start_timestamp=str(int(self.start_timestamp or 0)),
        )
        for entry in self.channels + self.spike_channels:
            stream.append(entry.to_element())
        if self.events_filename is not None:
            ElementTree.SubElement(stream, "EVENTS", filename=self.events_filename)
        if self.timestamps_filename is not None:
            ElementTree.SubElement(
                stream, "TIMESTAMPS", filename=self.timestamps_filename, position=str(self.timestamps_position)
            )
        return stream


class RecordingEntry:
    def __init__(self, number):
        self.number = int(number)
        self.streams = {}

    def add_stream(self, stream):
        if stream.key in self.streams:
            raise IndexInconsistentError(f"Stream {stream.key} listed twice in recording {self.number}")
        self.streams[stream.key] = stream

    def to_element(self):
        rec = ElementTree.Element("RECORDING", number=str(self.number))
        for stream in self.streams.values():
            rec.append(stream.to_element())
        return rec


class ExperimentIndex:
    """
    Parsed structural index: recordings by id, in increasing order.
    """

    def __init__(self, filename, number, version, variant):
        self.filename = Path(filename)
        self.dirname = self.filename.parent
        self.number = int(number)
        self.version = version
        self.variant = variant
        self.recordings = {}

    def stream_keys(self):
        """Stream keys in order of appearance, first recording first."""
        keys = []
        for rec in self.recordings.values():
            for key in rec.streams:
                if key not in keys:
                    keys.append(key)
        return keys

    def stream_recordings(self, key):
        """``[(recording_id, StreamEntry)]`` of every recording holding the stream."""
        return [(rec_id, rec.streams[key]) for rec_id, rec in self.recordings.items() if key in rec.streams]


# writing


def _read_root(filename):
    filename = Path(filename)
    if not filename.exists():
        return None
    try:
        root = ElementTree.parse(filename).getroot()
    except ElementTree.ParseError:
        logger.warning(f"{filename} is not a valid index file, it will be replaced")
        return None
    if root.tag != "EXPERIMENT":
        logger.warning(f"{filename} has root tag {root.tag}, it will be replaced")
        return None
    return root


def last_recording_number(filename):
    """Highest recording number already listed in an index file, 0 if none."""
    root = _read_root(filename)
    if root is None:
        return 0
    numbers = [int(rec.get("number", 0)) for rec in root.iter("RECORDING")]
    return max(numbers, default=0)


def write_structure(filename, recording, experiment_number=1):
    """
    Append a recording to the index file, creating the file when it does not
    exist yet.
    """
    root = _read_root(filename)
    if root is None:
        root = ElementTree.Element("EXPERIMENT", version=FORMAT_VERSION, number=str(experiment_number))
    root.append(recording.to_element())

    tree = ElementTree.ElementTree(root)
    ElementTree.indent(tree)
    tree.write(filename, encoding="UTF-8", xml_declaration=True)
    logger.debug(f"Wrote recording {recording.number} to {filename}")


# reading


def _int_attribute(element, name, default=None):
    value = element.get(name)
    if value is None:
        if default is None:
            raise IndexInconsistentError(f"<{element.tag}> has no {name} attribute")
        return default
    # positions were once written as doubles
    return int(float(value))


def _channel_entry(element):
    return ChannelEntry(
        element.get("name", ""),
        float(element.get("bitVolts", "1")),
        element.get("filename"),
        _int_attribute(element, "position", HEADER_SIZE),
    )


def _spike_channel_entry(element):
    bit_volts = element.get("bitVolts")
    if bit_volts is not None:
        bit_volts = [float(bv) for bv in bit_volts.split(",")]
    return SpikeChannelEntry(
        element.get("name", ""),
        element.get("filename"),
        _int_attribute(element, "num_channels"),
        _int_attribute(element, "num_samples"),
        _int_attribute(element, "position", HEADER_SIZE),
        bit_volts=bit_volts,
    )


def _parse_stream(element):
    start_timestamp = element.get("start_timestamp")
    stream = StreamEntry(
        _int_attribute(element, "source_node_id"),
        element.get("name", ""),
        float(element.get("sample_rate", "0")),
        source_node_name=element.get("source_node_name", ""),
        start_timestamp=None if start_timestamp is None else int(start_timestamp),
    )
    for child in element:
        if child.tag == "CHANNEL":
            stream.channels.append(_channel_entry(child))
        elif child.tag == "SPIKECHANNEL":
            stream.spike_channels.append(_spike_channel_entry(child))
        elif child.tag == "EVENTS":
            stream.events_filename = child.get("filename")
        elif child.tag == "TIMESTAMPS":
            stream.timestamps_filename = child.get("filename")
            stream.timestamps_position = _int_attribute(child, "position", HEADER_SIZE)
        else:
            logger.warning(f"Unknown <{child.tag}> in stream {stream.key}")
    return stream


def _parse_processor(element, sample_rate):
    stream = StreamEntry(_int_attribute(element, "id"), "", sample_rate)
    for child in element:
        if child.tag == "CHANNEL":
            stream.channels.append(_channel_entry(child))
        else:
            logger.warning(f"Unknown <{child.tag}> in processor {stream.key}")
    return stream


def detect_variant(root):
    tags = {child.tag for rec in root.iter("RECORDING") for child in rec}
    if "STREAM" in tags and "PROCESSOR" in tags:
        raise IndexInconsistentError("Index mixes STREAM and PROCESSOR elements")
    if "PROCESSOR" in tags:
        return FormatVariant.LEGACY
    return FormatVariant.STREAM


def parse_structure(filename):
    """
    Parse the index file only, without touching any data file.
    Legacy start timestamps stay None and sample counts 0.
    """
    filename = Path(filename)
    try:
        root = ElementTree.parse(filename).getroot()
    except FileNotFoundError as e:
        raise OEFileNotFoundError(f"Index file {filename} not found") from e
    except ElementTree.ParseError as e:
        raise OEFileNotFoundError(f"Index file {filename} is not valid XML: {e}") from e
    if root.tag != "EXPERIMENT":
        raise OEFileNotFoundError(f"{filename} is not an experiment index (root tag {root.tag})")

    variant = detect_variant(root)
    index = ExperimentIndex(filename, root.get("number", "1"), root.get("version", FORMAT_VERSION), variant)

    recordings = []
    for rec_element in root.iter("RECORDING"):
        recording = RecordingEntry(_int_attribute(rec_element, "number"))
        for child in rec_element:
            if child.tag == "STREAM":
                recording.add_stream(_parse_stream(child))
            elif child.tag == "PROCESSOR":
                sample_rate = float(rec_element.get("samplerate", "0"))
                recording.add_stream(_parse_processor(child, sample_rate))
        recordings.append(recording)

    for recording in sorted(recordings, key=lambda r: r.number):
        if recording.number in index.recordings:
            raise IndexInconsistentError(f"Recording {recording.number} listed twice in {filename}")
        index.recordings[recording.number] = recording

    for rec in index.recordings.values():
        for stream in rec.streams.values():
            positions = {ch.position for ch in stream.channels}
            if len(positions) > 1:
                raise IndexInconsistentError(
                    f"Channels of stream {stream.key} start at different positions {sorted(positions)} "
                    f"in recording {rec.number}"
                )
    return index


def probe_recording_start(filename, recording_number):
    """
    Find the first block of a recording in a continuous file by its recording
    number field. Returns ``(start_timestamp, byte_position)``.

    The recording numbers along the file must never decrease, otherwise the
    probe cannot be trusted.
    """
    blocks = map_continuous_file(filename)
    rec_nums = np.asarray(blocks["rec_num"], dtype="int64")
    if np.any(np.diff(rec_nums) < 0):
        raise IndexInconsistentError(f"Recording numbers are not increasing along {filename}")
    (hits,) = np.nonzero(rec_nums == recording_number - 1)
    if hits.size == 0:
        raise IndexInconsistentError(f"Recording {recording_number} not found in {filename}")
    block_index = int(hits[0])
    return int(blocks["timestamp"][block_index]), HEADER_SIZE + block_index * BLOCK_SIZE


def resolve_start_timestamps(index):
    """Fill the start timestamps missing from the index (always the case for a legacy index)."""
    for rec_id, rec in index.recordings.items():
        for stream in rec.streams.values():
            if stream.start_timestamp is not None or not stream.channels:
                continue
            filename = index.dirname / stream.channels[0].filename
            start_timestamp, position = probe_recording_start(filename, rec_id)
            if position != stream.start_pos:
                logger.warning(
                    f"Recording {rec_id} of stream {stream.key} starts at byte {position} in "
                    f"{filename.name}, the index says {stream.start_pos}"
                )
            stream.start_timestamp = start_timestamp


def _file_size(filename):
    try:
        return os.path.getsize(filename)
    except FileNotFoundError as e:
        raise OEFileNotFoundError(f"Data file {filename} listed in the index not found") from e


def compute_sample_counts(index):
    """
    Second pass over the index: the sample count of a recording is the
    distance to the start of the next recording of the same stream, the last
    one ends with the file.
    """
    boundaries = {}
    for rec_id, rec in index.recordings.items():
        for key, stream in rec.streams.items():
            if stream.start_pos is not None:
                boundaries.setdefault(key, []).append((rec_id, stream.start_pos, stream.channels[0].filename))

    counts = {}
    for key, bounds in boundaries.items():
        for i, (rec_id, start, filename) in enumerate(bounds):
            if i + 1 < len(bounds):
                stop = bounds[i + 1][1]
            else:
                stop = _file_size(index.dirname / filename)
            if stop < start:
                raise IndexInconsistentError(
                    f"Recording {rec_id} of stream {key} starts at byte {start}, after the next one ({stop})"
                )
            counts[rec_id, key] = (stop - start) // BLOCK_SIZE * BLOCK_LENGTH

    for (rec_id, key), num_samples in counts.items():
        index.recordings[rec_id].streams[key].num_samples = num_samples
    return counts


def load_structure(filename):
    """
    Parse an index file and derive everything the reader needs: start
    timestamps missing from the index and sample counts of every recording
    of every stream.
    """
    index = parse_structure(filename)
    if index.variant is FormatVariant.LEGACY:
        legacy_events = events_filename(index.number)
        has_events = (index.dirname / legacy_events).exists()
        for rec in index.recordings.values():
            for stream in rec.streams.values():
                if has_events:
                    stream.events_filename = legacy_events
    resolve_start_timestamps(index)
    compute_sample_counts(index)
    return index
