"""
:mod:`oeformat.core` provides the channel description classes handed to the
writer by the acquisition host, and the errors raised by readers and writers.

Classes:

.. autoclass:: ChannelKind
.. autoclass:: ContinuousChannel
.. autoclass:: EventChannel
.. autoclass:: SpikeChannel
.. autoclass:: Stream

"""

from oeformat.core.errors import (
    OEFormatError,
    OEFileNotFoundError,
    MalformedRecordError,
    OutOfRangeError,
    WriteFailedError,
    IndexInconsistentError,
)
from oeformat.core.channels import ChannelKind, ContinuousChannel, EventChannel, SpikeChannel, Stream, group_streams

objectlist = [ContinuousChannel, EventChannel, SpikeChannel, Stream]
