"""
Channel descriptions supplied by the acquisition host.

Three kinds of channel are recorded: continuous channels (one file each),
a shared event channel and spike channels (one file per electrode). They are
kept as separate plain classes tagged by :class:`ChannelKind`; readers and
writers select the codec from ``channel.kind``.

Sampling rates may be given as floats in Hz or as :class:`quantities.Quantity`
objects; bit-volts as floats in uV per bit or as quantities.

Usage::

    >>> import quantities as pq
    >>> from oeformat.core import ContinuousChannel
    >>> ch = ContinuousChannel('CH1', 30 * pq.kHz, 0.195 * pq.uV,
    ...                        source_node_id=100, stream_name='example_data')
    >>> ch.sample_rate
    30000.0

"""

import enum

import numpy as np
import quantities as pq


class ChannelKind(enum.Enum):
    CONTINUOUS = "continuous"
    EVENT = "event"
    SPIKE = "spike"


def _magnitude(value, units):
    if isinstance(value, pq.Quantity):
        return float(value.rescale(units).magnitude)
    return float(value)


class ContinuousChannel:
    """
    One continuous (sampled voltage) channel.

    Parameters
    ----------
    name: str
        Channel name, e.g. 'CH1'
    sample_rate: float | pq.Quantity
        Sampling rate (Hz if a float)
    bit_volts: float | pq.Quantity
        Scaling factor, uV per integer step (uV if a float)
    source_node_id: int
        Id of the processor that produced the stream
    stream_name: str
        Name of the stream inside the source processor
    source_node_name: str, default: ''
        Human readable name of the source processor
    """

    kind = ChannelKind.CONTINUOUS

    def __init__(self, name, sample_rate, bit_volts, source_node_id, stream_name, source_node_name=""):
        self.name = str(name)
        self.sample_rate = _magnitude(sample_rate, pq.Hz)
        self.bit_volts = _magnitude(bit_volts, pq.uV)
        self.source_node_id = int(source_node_id)
        self.stream_name = str(stream_name)
        self.source_node_name = str(source_node_name)
        if self.bit_volts <= 0:
            raise ValueError(f"bit_volts must be positive for channel {self.name}")

    @property
    def stream_key(self):
        return f"{self.source_node_id}_{self.stream_name}"

    def __repr__(self):
        return (
            f"<ContinuousChannel {self.name!r} {self.stream_key} "
            f"{self.sample_rate} Hz {self.bit_volts} uV/bit>"
        )


class EventChannel:
    """
    The TTL/text event channel. All events of a recording share one file.
    """

    kind = ChannelKind.EVENT

    def __init__(self, sample_rate, source_node_id=0, stream_name="", name="Events"):
        self.name = str(name)
        self.sample_rate = _magnitude(sample_rate, pq.Hz)
        self.source_node_id = int(source_node_id)
        self.stream_name = str(stream_name)

    def __repr__(self):
        return f"<EventChannel {self.name!r} {self.sample_rate} Hz>"


class SpikeChannel:
    """
    One electrode (single electrode, stereotrode, tetrode...) producing spike
    waveforms.

    Parameters
    ----------
    name: str
        Electrode name
    sample_rate: float | pq.Quantity
        Sampling rate of the waveforms
    num_channels: int
        Number of sub-channels of the electrode
    num_samples: int
        Samples per waveform and per sub-channel
    channel_bit_volts: float | sequence
        Scaling factor of each sub-channel (one value is broadcast)
    source_node_id: int
    stream_name: str
    """

    kind = ChannelKind.SPIKE

    def __init__(self, name, sample_rate, num_channels, num_samples, channel_bit_volts, source_node_id, stream_name):
        self.name = str(name)
        self.sample_rate = _magnitude(sample_rate, pq.Hz)
        self.num_channels = int(num_channels)
        self.num_samples = int(num_samples)
        self.source_node_id = int(source_node_id)
        self.stream_name = str(stream_name)

        if isinstance(channel_bit_volts, pq.Quantity):
            channel_bit_volts = channel_bit_volts.rescale(pq.uV).magnitude
        bit_volts = np.atleast_1d(np.asarray(channel_bit_volts, dtype="float64"))
        if bit_volts.size == 1:
            bit_volts = np.repeat(bit_volts, self.num_channels)
        if bit_volts.size != self.num_channels:
            raise ValueError(
                f"SpikeChannel {self.name}: {bit_volts.size} bit_volts given for {self.num_channels} channels"
            )
        self.channel_bit_volts = tuple(float(bv) for bv in bit_volts)

    @property
    def stream_key(self):
        return f"{self.source_node_id}_{self.stream_name}"

    @property
    def total_samples(self):
        return self.num_channels * self.num_samples

    def __repr__(self):
        return f"<SpikeChannel {self.name!r} {self.num_channels}x{self.num_samples} {self.stream_key}>"


class Stream:
    """
    A group of channels sharing a sample clock and a source processor.
    """

    def __init__(self, source_node_id, name, sample_rate, source_node_name=""):
        self.source_node_id = int(source_node_id)
        self.name = str(name)
        self.sample_rate = float(sample_rate)
        self.source_node_name = str(source_node_name)
        self.continuous_channels = []
        self.event_channel = None
        self.spike_channels = []

    @property
    def key(self):
        return f"{self.source_node_id}_{self.name}"

    def __repr__(self):
        return (
            f"<Stream {self.key} {self.sample_rate} Hz "
            f"({len(self.continuous_channels)} continuous, {len(self.spike_channels)} spike)>"
        )


def group_streams(continuous_channels, event_channel=None, spike_channels=()):
    """
    Group channels into :class:`Stream` objects, keeping the order in which
    streams first appear among the continuous channels.

    The shared event channel is attached to every stream. Spike channels whose
    stream has no continuous channel create their own stream.
    """
    streams = {}
    for ch in continuous_channels:
        if ch.kind is not ChannelKind.CONTINUOUS:
            raise TypeError(f"{ch!r} is not a continuous channel")
        if ch.stream_key not in streams:
            streams[ch.stream_key] = Stream(ch.source_node_id, ch.stream_name, ch.sample_rate, ch.source_node_name)
        streams[ch.stream_key].continuous_channels.append(ch)

    for sp in spike_channels:
        if sp.kind is not ChannelKind.SPIKE:
            raise TypeError(f"{sp!r} is not a spike channel")
        if sp.stream_key not in streams:
            streams[sp.stream_key] = Stream(sp.source_node_id, sp.stream_name, sp.sample_rate)
        streams[sp.stream_key].spike_channels.append(sp)

    if event_channel is not None:
        if event_channel.kind is not ChannelKind.EVENT:
            raise TypeError(f"{event_channel!r} is not an event channel")
        for stream in streams.values():
            stream.event_channel = event_channel

    return list(streams.values())
