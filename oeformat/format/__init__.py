"""
:mod:`oeformat.format` holds the binary layout of the legacy Open Ephys
format and the codecs shared by :mod:`oeformat.io` (writing) and
:mod:`oeformat.rawio` (reading):

* :mod:`oeformat.format.layout` constants, record dtypes, text headers, file names
* :mod:`oeformat.format.continuous` continuous blocks
* :mod:`oeformat.format.records` event and spike records
* :mod:`oeformat.format.structure` structural index
"""

from oeformat.format.layout import FormatVariant, read_file_header
