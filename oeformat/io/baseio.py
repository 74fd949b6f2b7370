"""
baseio
======

Classes
-------

BaseIO        - abstract class which should be overridden, managing how a
                recording is written to disk

If you want a model for developing a new writer start from OpenEphysIO.
"""

from __future__ import annotations
from pathlib import Path
import logging

from oeformat import logging_handler


class BaseIO:
    """
    Generic class for the writers of the package.

    A writer lives through ``open_files()`` / ``close_files()`` cycles, one
    cycle per recording. Between the two calls the acquisition host pushes
    data with the ``write_XXX()`` methods.
    """

    is_readable = False
    is_writable = True

    name = "BaseIO"
    description = ""
    extensions = []

    mode = "dir"

    def __init__(self, dirname: str | Path = None, **kargs):
        self.dirname = Path(dirname) if dirname is not None else None
        # create a logger for the IO class
        fullname = self.__class__.__module__ + "." + self.__class__.__name__
        self.logger = logging.getLogger(fullname)
        # create a logger for 'oeformat' and add a handler to it if it doesn't
        # have one already.
        # (it will also not add one if the root logger has a handler)
        corename = self.__class__.__module__.split(".")[0]
        corelogger = logging.getLogger(corename)
        rootlogger = logging.getLogger()
        if not corelogger.handlers and not rootlogger.handlers:
            corelogger.addHandler(logging_handler)

    def open_files(self, **kargs):
        raise NotImplementedError

    def close_files(self):
        raise NotImplementedError

    def __repr__(self):
        return f"{self.__class__.__name__}: {self.dirname}"
