"""
baserawio
======

Classes
-------

BaseRawIO
abstract class which should be overridden to write a RawIO.

A RawIO gives fast access to the raw data of a recording:
  * internal use of memmap
  * fast reading of the header (do not read the complete files)
  * signals are grouped by "stream": channels sharing a sample clock and a
    source processor, read together as one (samples, channels) chunk

With this API the IO have an attributes `header` with necessary keys:
  * header['signal_streams']: one entry per stream
  * header['signal_channels']: one entry per continuous channel
  * header['spike_channels']: one entry per electrode
"""

from __future__ import annotations

import logging

import numpy as np

from oeformat import logging_handler


error_header = "Header is not read yet, do parse_header() first"

_signal_stream_dtype = [
    ("name", "U64"),  # not necessarily unique
    ("id", "U64"),  # must be unique
    ("sampling_rate", "float64"),
    ("num_samples", "int64"),  # concatenated over every recording
]

_signal_channel_dtype = [
    ("name", "U64"),
    ("id", "U64"),
    ("sampling_rate", "float64"),
    ("dtype", "U16"),
    ("units", "U64"),
    ("gain", "float64"),
    ("offset", "float64"),
    ("stream_id", "U64"),
]

_spike_channel_dtype = [
    ("name", "U64"),
    ("id", "U64"),
    ("stream_id", "U64"),
    ("num_channels", "int64"),
    ("num_samples", "int64"),
    ("sampling_rate", "float64"),
]


class BaseRawIO:
    """
    Generic class to handle.

    """

    name = "BaseRawIO"
    description = ""
    extensions = []

    rawmode = None  # 'one-file' or 'one-dir'

    def __init__(self, **kargs):
        # create a logger for the IO class
        fullname = self.__class__.__module__ + "." + self.__class__.__name__
        self.logger = logging.getLogger(fullname)
        # Create a logger for 'oeformat' and add a handler to it if it doesn't have one already.
        # (it will also not add one if the root logger has a handler)
        corename = self.__class__.__module__.split(".")[0]
        corelogger = logging.getLogger(corename)
        rootlogger = logging.getLogger()
        if not corelogger.handlers and not rootlogger.handlers:
            corelogger.addHandler(logging_handler)

        self.header = None
        self.is_header_parsed = False

    def parse_header(self):
        """
        Parses the header of the file(s) to allow for faster computations
        for all other functions

        """
        # this must create
        # self.header['signal_streams']
        # self.header['signal_channels']
        # self.header['spike_channels']
        self._parse_header()
        self.is_header_parsed = True

    def source_name(self):
        """Return fancy name of file source"""
        return self._source_name()

    def _check_header(self):
        if not self.is_header_parsed:
            raise RuntimeError(error_header)

    def signal_streams_count(self):
        self._check_header()
        return len(self.header["signal_streams"])

    def signal_channels_count(self, stream_index: int):
        self._check_header()
        stream_id = self.header["signal_streams"][stream_index]["id"]
        channels = self.header["signal_channels"]
        return int(np.sum(channels["stream_id"] == stream_id))

    def __repr__(self):
        txt = f"{self.__class__.__name__}: {self.source_name()}\n"
        if self.header is not None:
            v = [
                s["name"] + f" (chans: {self.signal_channels_count(i)})"
                for i, s in enumerate(self.header["signal_streams"])
            ]
            txt += f"signal_streams: {pprint_vector(v)}\n"
            for k in ("signal_channels", "spike_channels"):
                txt += f"{k}: {pprint_vector(self.header[k]['name'])}\n"
        return txt

    def _source_name(self):
        raise NotImplementedError

    def _parse_header(self):
        raise NotImplementedError


def pprint_vector(vector, lim: int = 8):
    vector = np.asarray(vector, dtype=str)
    if len(vector) > lim:
        part1 = ", ".join(e for e in vector[: lim // 2])
        part2 = " , ".join(e for e in vector[-lim // 2 :])
        txt = f"[{part1} ... {part2}]"
    else:
        part1 = ", ".join(e for e in vector)
        txt = f"[{part1}]"
    return txt
