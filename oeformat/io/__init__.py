"""
:mod:`oeformat.io` provides the classes writing recordings to disk.

Classes:

* :attr:`OpenEphysIO`

.. autoclass:: oeformat.io.OpenEphysIO

    .. autoattribute:: extensions

"""

from oeformat.io.openephysio import OpenEphysIO

iolist = [OpenEphysIO]
