"""
:mod:`oeformat.rawio` provides classes for reading Open Ephys format
recordings with a low-level API

Classes:

* :attr:`OpenEphysRawIO`

.. autoclass:: oeformat.rawio.OpenEphysRawIO

    .. autoattribute:: extensions

"""

from oeformat.rawio.openephysrawio import OpenEphysRawIO

rawiolist = [OpenEphysRawIO]
