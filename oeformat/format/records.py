"""
Codec of the discrete records: 16 bytes events and variable length spikes.

Spike samples are stored offset-binary: ``round(x / bit_volts) + 32768`` as
uint16. The per channel gain field keeps the legacy fixed point convention
``int(1 / bit_volts) * 1000`` stored as float32, so legacy readers computing
``1000 / gain`` keep working.

The gain is truncated, not rounded: ``int(1 / 0.195) * 1000`` is 5000, as
legacy writers store it, where ``round(1000 / 0.195)`` would give 5128. A
channel with ``bit_volts > 1`` gets a gain of 0; its waveforms can only be
scaled back with the bit-volts of the index.
"""

from collections import namedtuple

import numpy as np

from oeformat.core.errors import MalformedRecordError
from .layout import BYTES_PER_EVENT, SPIKE_OFFSET, events_dtype, make_spikes_dtype, spike_record_size


# event types as written in the event_type field
TTL = 3
SPIKE = 4
TEXT = 5

EventRecord = namedtuple(
    "EventRecord", ["timestamp", "sample_position", "event_type", "source_id", "state", "line", "recording_number"]
)

SpikeRecord = namedtuple(
    "SpikeRecord",
    [
        "timestamp",
        "source_id",
        "sorted_id",
        "electrode_id",
        "sample_rate",
        "waveform",
        "gains",
        "thresholds",
        "recording_number",
    ],
)


def encode_event(timestamp, event_type, source_id, state, line, recording_index):
    """
    Pack one event as the 16 bytes on-disk record.
    ``recording_index`` is the 0-based recording number stored on disk.
    """
    record = np.zeros(1, dtype=events_dtype)
    record["timestamp"] = timestamp
    record["sample_pos"] = 0
    record["event_type"] = event_type
    record["processor_id"] = int(source_id) & 0xFF
    record["event_id"] = 1 if state else 0
    record["chan_id"] = int(line) & 0xFF
    record["record_num"] = recording_index
    return record.tobytes()


def decode_events(buffer):
    """Decode a buffer holding a whole number of event records."""
    if len(buffer) % BYTES_PER_EVENT != 0:
        raise MalformedRecordError(f"Event buffer of {len(buffer)} bytes is not a multiple of {BYTES_PER_EVENT}")
    return np.frombuffer(buffer, dtype=events_dtype)


def decode_event(buffer):
    if len(buffer) != BYTES_PER_EVENT:
        raise MalformedRecordError(f"An event record is {BYTES_PER_EVENT} bytes, got {len(buffer)}")
    r = decode_events(buffer)[0]
    return EventRecord(
        int(r["timestamp"]),
        int(r["sample_pos"]),
        int(r["event_type"]),
        int(r["processor_id"]),
        int(r["event_id"]),
        int(r["chan_id"]),
        int(r["record_num"]),
    )


def legacy_gains(channel_bit_volts):
    return np.array([int(1.0 / bv) * 1000 for bv in channel_bit_volts], dtype="<f4")


def encode_spike(
    channel, waveform, timestamp, recording_index, source_id=0, sorted_id=0, electrode_index=0, thresholds=None
):
    """
    Pack one spike of a :class:`oeformat.core.SpikeChannel`.

    Parameters
    ----------
    channel: SpikeChannel
    waveform: array (num_channels, num_samples)
        Waveform in uV
    timestamp: int
        Sample number of the spike
    recording_index: int
        0-based recording number stored on disk
    thresholds: sequence of int | None
        Detection threshold of each channel
    """
    n_chan, n_samp = channel.num_channels, channel.num_samples
    waveform = np.asarray(waveform, dtype="float64")
    if waveform.size != n_chan * n_samp:
        raise ValueError(f"Waveform of {waveform.size} samples, {channel.name} expects {n_chan}x{n_samp}")
    waveform = waveform.reshape(n_chan, n_samp)

    if thresholds is None:
        thresholds = np.zeros(n_chan, dtype="<i2")

    bit_volts = np.asarray(channel.channel_bit_volts, dtype="float64")
    quantized = np.round(waveform / bit_volts[:, np.newaxis]) + SPIKE_OFFSET
    quantized = np.clip(quantized, 0, 0xFFFF)

    record = np.zeros(1, dtype=make_spikes_dtype(n_chan, n_samp))
    record["event_type"] = SPIKE
    record["timestamp"] = timestamp
    record["software_timestamp"] = 0
    record["source_id"] = source_id
    record["nb_channel"] = n_chan
    record["nb_sample"] = n_samp
    record["sorted_id"] = sorted_id
    record["electrode_id"] = electrode_index
    record["sampling_rate"] = min(int(channel.sample_rate), 0xFFFF)
    record["samples"] = quantized.astype("<u2").reshape(-1)
    record["gains"] = legacy_gains(channel.channel_bit_volts)
    record["thresholds"] = np.asarray(thresholds, dtype="<i2")
    record["rec_num"] = recording_index
    return record.tobytes()


def decode_spikes(buffer, num_channels, num_samples):
    size = spike_record_size(num_channels, num_samples)
    if len(buffer) % size != 0:
        raise MalformedRecordError(
            f"Spike buffer of {len(buffer)} bytes is not a multiple of the {size} bytes record "
            f"of a {num_channels}x{num_samples} electrode"
        )
    return np.frombuffer(buffer, dtype=make_spikes_dtype(num_channels, num_samples))


def spike_waveforms(records, num_channels, num_samples, channel_bit_volts=None):
    """
    Convert the samples of spike records to uV, shape (n_spikes, num_channels, num_samples).

    Without ``channel_bit_volts`` the scaling is taken back from the legacy gain field.
    """
    samples = records["samples"].reshape(-1, num_channels, num_samples).astype("float64") - SPIKE_OFFSET
    if channel_bit_volts is None:
        gains = records["gains"].astype("float64")
        # a zero gain (bit_volts > 1) cannot be inverted, those channels read as 0
        bit_volts = np.divide(1000.0, gains, out=np.zeros_like(gains), where=gains != 0)
    else:
        bit_volts = np.broadcast_to(np.asarray(channel_bit_volts, dtype="float64"), (records.size, num_channels))
    return samples * bit_volts[:, :, np.newaxis]


def decode_spike(buffer, num_channels, num_samples, channel_bit_volts=None):
    size = spike_record_size(num_channels, num_samples)
    if len(buffer) != size:
        raise MalformedRecordError(
            f"A {num_channels}x{num_samples} spike record is {size} bytes, got {len(buffer)}"
        )
    records = decode_spikes(buffer, num_channels, num_samples)
    r = records[0]
    waveform = spike_waveforms(records, num_channels, num_samples, channel_bit_volts)[0]
    return SpikeRecord(
        int(r["timestamp"]),
        int(r["source_id"]),
        int(r["sorted_id"]),
        int(r["electrode_id"]),
        int(r["sampling_rate"]),
        waveform,
        np.array(r["gains"]),
        np.array(r["thresholds"]),
        int(r["rec_num"]),
    )
