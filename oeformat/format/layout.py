"""
Byte layout shared by the writer and the reader of the legacy Open Ephys
format.

Every data file starts with a 1024 bytes text header made of
``header.key = value;`` lines padded with spaces. It is followed by:

  * .continuous: blocks of 1024 samples (int64 timestamp, uint16 sample
    count, uint16 recording number, 1024 big-endian int16 samples and a
    10 bytes record marker)
  * .events: 16 bytes records
  * .spikes: variable length records whose size depends on the number of
    channels and of samples per waveform of the electrode
  * .timestamps: one float64 synchronized timestamp per continuous block

All numeric fields are little-endian except the continuous samples, which
are stored big-endian whatever the platform.

See https://open-ephys.github.io/gui-docs/User-Manual/Recording-data/Open-Ephys-format.html
"""

import enum
import logging
import time

import numpy as np
from packaging.version import Version, InvalidVersion

from oeformat.core.channels import ChannelKind


FORMAT_NAME = "Open Ephys Data Format"
FORMAT_VERSION = "0.4"

HEADER_SIZE = 1024
BLOCK_LENGTH = 1024
RECORD_MARKER = np.array([0, 1, 2, 3, 4, 5, 6, 7, 8, 255], dtype="uint8")
RECORD_MARKER_SIZE = RECORD_MARKER.size

EVENT_HEADER_SIZE = HEADER_SIZE
BYTES_PER_EVENT = 16
SPIKE_HEADER_SIZE = 42

MAX_INT16 = 0x7FFF
SPIKE_OFFSET = 32768

logger = logging.getLogger(__name__)


class FormatVariant(enum.Enum):
    """Shape of the structural index."""

    # RECORDING > PROCESSOR > CHANNEL, no start timestamps
    LEGACY = "legacy"
    # RECORDING > STREAM > CHANNEL/SPIKECHANNEL/EVENTS/TIMESTAMPS
    STREAM = "stream"


block_header_dtype = [
    ("timestamp", "<i8"),
    ("nb_sample", "<u2"),
    ("rec_num", "<u2"),
]

continuous_dtype = block_header_dtype + [
    ("samples", ">i2", BLOCK_LENGTH),
    ("markers", "uint8", RECORD_MARKER_SIZE),
]

events_dtype = [
    ("timestamp", "<i8"),
    ("sample_pos", "<i2"),
    ("event_type", "uint8"),
    ("processor_id", "uint8"),
    ("event_id", "uint8"),
    ("chan_id", "uint8"),
    ("record_num", "<u2"),
]

timestamps_dtype = [("timestamp", "<f8")]

BLOCK_HEADER_SIZE = np.dtype(block_header_dtype).itemsize
BLOCK_SIZE = np.dtype(continuous_dtype).itemsize

_base_spikes_dtype = [
    ("event_type", "uint8"),
    ("timestamp", "<i8"),
    ("software_timestamp", "<i8"),
    ("source_id", "<u2"),
    ("nb_channel", "<u2"),
    ("nb_sample", "<u2"),
    ("sorted_id", "<u2"),
    ("electrode_id", "<u2"),
    ("within_chan_index", "<u2"),
    ("color", "uint8", 3),
    ("pca", "<f4", 2),
    ("sampling_rate", "<u2"),
]


def make_spikes_dtype(num_channels, num_samples):
    """
    Build the record dtype of a spike file. Channel and sample counts are
    not read from the file: they come from the electrode description.
    """
    return _base_spikes_dtype + [
        ("samples", "<u2", (num_channels * num_samples,)),
        ("gains", "<f4", (num_channels,)),
        ("thresholds", "<i2", (num_channels,)),
        ("rec_num", "<u2"),
    ]


def spike_record_size(num_channels, num_samples):
    return np.dtype(make_spikes_dtype(num_channels, num_samples)).itemsize


# header text

_descriptions = {
    ChannelKind.EVENT: (
        "each record contains one 64-bit timestamp, one 16-bit sample position, "
        "one uint8 event type, one uint8 processor ID, one uint8 event ID, one uint8 event channel, "
        "and one uint16 recordingNumber"
    ),
    ChannelKind.CONTINUOUS: (
        "each record contains one 64-bit timestamp, one 16-bit sample count (N), 1 uint16 recordingNumber, "
        "N 16-bit samples, and one 10-byte record marker (0 1 2 3 4 5 6 7 8 255)"
    ),
    ChannelKind.SPIKE: (
        "Each record contains 1 uint8 eventType, 1 int64 timestamp, 1 int64 software timestamp, "
        "1 uint16 sourceID, 1 uint16 numChannels (n), 1 uint16 numSamples (m), 1 uint16 sortedID, "
        "1 uint16 electrodeID, 1 uint16 channel, 3 uint8 color codes, 2 float32 component projections, "
        "n*m uint16 samples, n float32 channelGains, n uint16 thresholds, and 1 uint16 recordingNumber"
    ),
    None: "each record contains one 64-bit float synchronized timestamp of the first sample of a continuous block",
}


def format_number(value):
    """Float formatting of the headers and of the index: 30000 not 30000.0"""
    text = repr(float(value))
    if text.endswith(".0"):
        text = text[:-2]
    return text


def generate_date_string(t=None):
    """Date of the header, e.g. '15-Jun-2014 105345'"""
    if t is None:
        t = time.localtime()
    return time.strftime("%d-%b-%Y %H%M%S", t)


def _event_header_text(ch):
    return f"header.channel = 'Events';\nheader.channelType = 'Event';\n;\nheader.blockLength = {BLOCK_LENGTH};\n"


def _continuous_header_text(ch):
    return (
        f"header.channel = '{ch.name}';\n"
        "header.channelType = 'Continuous';\n"
        f"header.sampleRate = {format_number(ch.sample_rate)};\n"
        f"header.blockLength = {BLOCK_LENGTH};\n"
        f"header.bitVolts = {format_number(ch.bit_volts)};\n"
    )


def _spike_header_text(ch):
    return (
        f"header.electrode = '{ch.name}';\n"
        f"header.num_channels = {ch.num_channels};\n"
        f"header.sampleRate = {format_number(ch.sample_rate)};\n"
        f"header.samplesPerSpike = {ch.num_samples};\n"
    )


def _timestamps_header_text(stream):
    return (
        f"header.stream = '{stream.key}';\n"
        "header.channelType = 'Timestamps';\n"
        f"header.sampleRate = {format_number(stream.sample_rate)};\n"
        f"header.blockLength = {BLOCK_LENGTH};\n"
    )


_header_texts = {
    ChannelKind.EVENT: _event_header_text,
    ChannelKind.CONTINUOUS: _continuous_header_text,
    ChannelKind.SPIKE: _spike_header_text,
    None: _timestamps_header_text,
}


def generate_header(ch, date_string=None):
    """
    Build the HEADER_SIZE bytes text header of a file.

    ``ch`` is a channel (continuous, event or spike) or a
    :class:`oeformat.core.Stream` for the synchronized timestamps file.
    """
    if date_string is None:
        date_string = generate_date_string()
    kind = getattr(ch, "kind", None)

    header = f"header.format = '{FORMAT_NAME}'; \n"
    header += f"header.version = {FORMAT_VERSION}; \n"
    header += f"header.header_bytes = {HEADER_SIZE};\n"
    header += f"header.description = '{_descriptions[kind]}'; \n"
    header += f"header.date_created = '{date_string}';\n"
    header += _header_texts[kind](ch)

    header = header.encode("utf-8")
    if len(header) > HEADER_SIZE:
        raise ValueError(f"Header of {ch!r} is {len(header)} bytes long, more than {HEADER_SIZE}")
    return header + b" " * (HEADER_SIZE - len(header))


def read_file_header(filename):
    """Read header information from the first 1024 bytes of an OpenEphys file.
    Quotes around string values are removed.
    """
    header = {}
    with open(filename, mode="rb") as f:
        # Remove newlines and redundant "header." prefixes
        # The result should be a series of "key = value" strings, separated
        # by semicolons.
        header_string = f.read(HEADER_SIZE).replace(b"\n", b"").replace(b"header.", b"")

    for pair in header_string.split(b";"):
        if b" = " not in pair:
            continue
        key, _, value = pair.partition(b" = ")
        key = key.strip().decode("ascii")
        value = value.strip().decode("utf-8")

        if key in ["bitVolts", "sampleRate"]:
            header[key] = float(value)
        elif key in ["blockLength", "bufferSize", "header_bytes", "num_channels", "samplesPerSpike"]:
            header[key] = int(value)
        else:
            header[key] = value.strip("'")

    return header


def check_format_version(version, source=""):
    """
    Return True when a file version can be read by this package, log a
    warning when it is newer than the supported version.
    """
    try:
        parsed = Version(str(version))
    except InvalidVersion:
        logger.warning(f"Unparsable format version {version!r} in {source}")
        return False
    if parsed > Version(FORMAT_VERSION):
        logger.warning(f"{source} has format version {version}, newer than supported {FORMAT_VERSION}")
        return False
    return True


# file naming


def _suffix(experiment_number):
    return f"_{experiment_number}" if experiment_number > 1 else ""


def clean_name(name):
    return name.replace(" ", "").replace("_", "-")


def continuous_filename(ch, experiment_number=1):
    return (
        f"{ch.source_node_id}_{clean_name(ch.stream_name)}_{clean_name(ch.name)}"
        f"{_suffix(experiment_number)}.continuous"
    )


def timestamps_filename(stream, experiment_number=1):
    return f"{stream.source_node_id}_{clean_name(stream.name)}{_suffix(experiment_number)}.timestamps"


def events_filename(experiment_number=1):
    return f"all_channels{_suffix(experiment_number)}.events"


def spikes_filename(ch, experiment_number=1):
    # the doubled underscore before the experiment number is part of the format
    name = f"{ch.name.replace(' ', '')}_{clean_name(ch.stream_name)}_"
    if experiment_number > 1:
        name += f"_{experiment_number}"
    return name + ".spikes"


def messages_filename(experiment_number=1):
    return f"messages{_suffix(experiment_number)}.events"


def structure_filename(experiment_number=1):
    return f"structure{_suffix(experiment_number)}.openephys"
