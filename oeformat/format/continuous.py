"""
Codec of the continuous blocks.

A float sample ``x`` of a channel with scaling factor ``bit_volts`` is stored
as ``round(32767 * clip(x / (32767 * bit_volts), -1, 1))``, a big-endian
int16. Decoding is ``value * bit_volts``. The byte order is explicit in the
numpy dtype so the swap is the same on every platform.

Reading uses numpy memmap of the whole file as an array of
``continuous_dtype`` records so a block is a bounds-checked view, not a
pointer computed by hand.
"""

import os

import numpy as np

from oeformat.core.errors import MalformedRecordError, OutOfRangeError, IndexInconsistentError, OEFileNotFoundError
from .layout import (
    BLOCK_LENGTH,
    BLOCK_SIZE,
    HEADER_SIZE,
    MAX_INT16,
    RECORD_MARKER,
    block_header_dtype,
    continuous_dtype,
)


sample_dtype = np.dtype(">i2")


def encode_samples(samples, bit_volts):
    """
    Convert float samples (uV) to big-endian int16 values.
    """
    samples = np.asarray(samples, dtype="float64")
    scaled = samples / (MAX_INT16 * float(bit_volts))
    scaled = np.clip(scaled, -1.0, 1.0) * MAX_INT16
    return np.round(scaled).astype(sample_dtype)


def decode_samples(raw, bit_volts, dtype="float32"):
    """
    Convert int16 values as stored on disk to float samples (uV).
    """
    return np.asarray(raw).astype(dtype) * np.array(bit_volts, dtype=dtype)


def pack_block_header(timestamp, recording_index, nb_sample=BLOCK_LENGTH):
    header = np.zeros(1, dtype=block_header_dtype)
    header["timestamp"] = timestamp
    header["nb_sample"] = nb_sample
    header["rec_num"] = recording_index
    return header.tobytes()


def write_block(fid, timestamp, samples, recording_index, bit_volts):
    """
    Write one complete block to an opened file: header, samples zero padded
    to BLOCK_LENGTH and record marker. Returns the number of bytes written.
    """
    encoded = encode_samples(samples, bit_volts)
    if encoded.size > BLOCK_LENGTH:
        raise ValueError(f"A block holds at most {BLOCK_LENGTH} samples, got {encoded.size}")
    block = np.zeros(BLOCK_LENGTH, dtype=sample_dtype)
    block[: encoded.size] = encoded

    n = fid.write(pack_block_header(timestamp, recording_index))
    n += fid.write(block.tobytes())
    n += fid.write(RECORD_MARKER.tobytes())
    return n


def map_continuous_file(filename, offset=HEADER_SIZE, num_blocks=None):
    """
    Memory map a .continuous file as an array of blocks starting at byte
    ``offset``. When ``num_blocks`` is None every complete block is mapped.
    """
    try:
        filesize = os.path.getsize(filename)
    except FileNotFoundError as e:
        raise OEFileNotFoundError(f"Continuous file {filename} not found") from e

    available = max(filesize - offset, 0) // BLOCK_SIZE
    if num_blocks is None:
        num_blocks = available
    elif num_blocks > available:
        raise IndexInconsistentError(
            f"{filename} holds {available} blocks after byte {offset}, the index announces {num_blocks}"
        )
    if num_blocks == 0:
        return np.zeros(0, dtype=continuous_dtype)
    return np.memmap(filename, mode="r", offset=offset, dtype=continuous_dtype, shape=(num_blocks,))


def read_block(blocks, block_index, out=None):
    """
    Return ``(timestamp, samples)`` of one block of a mapped file.

    ``samples`` is a read-only view on the mapped file, unless ``out`` is
    given: samples are then copied into ``out`` which is returned instead.
    """
    if not 0 <= block_index < blocks.size:
        raise OutOfRangeError(f"Block {block_index} out of range, the file has {blocks.size} blocks")
    if not np.array_equal(blocks["markers"][block_index], RECORD_MARKER):
        raise MalformedRecordError(f"Corrupted record marker at block {block_index}")
    samples = blocks["samples"][block_index]
    if out is not None:
        out[:] = samples
        samples = out
    return int(blocks["timestamp"][block_index]), samples
