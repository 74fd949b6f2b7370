'''
oeformat is a package for writing and reading the legacy Open Ephys data
format (.continuous, .events, .spikes files indexed by a structure file)
'''
from oeformat.version import version as __version__

import logging

logging_handler = logging.StreamHandler()

from oeformat.core import *
from oeformat.io import *
from oeformat.rawio import *
