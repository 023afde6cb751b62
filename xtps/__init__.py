''' __init__.py - initialize package

Copyright (c) 2022 Netherlands Forensic Institute - MIT License
'''

def _modcheck():
    ''' check if we have at least version 3.1.3 of bitstring module and some version of numpy and xlsxwriter '''

    try:
        import bitstring as _bitstring
    except ImportError:
        raise ImportError('this package requires the bitstring module')

    import re as _re
    major, minor, patch = _re.match(r'(\d+)\.(\d+)\.?(\d*)', _bitstring.__version__).groups()
    patch = patch or '0'
    err = 'bitstring version >= 3.1.3 required'
    if int(major) < 3:
        raise ImportError(err)
    elif int(major) == 3 and int(minor) < 1:
        raise ImportError(err)
    elif int(major) == 3 and int(minor) == 1 and int(patch) < 3:
        raise ImportError(err)

    try:
        import numpy
    except ImportError:
        raise ImportError('this package requires numpy')

    try:
        import xlsxwriter
    except ImportError:
        raise ImportError('this packages requires xlsxwriter')


_modcheck()

#######
# API #
#######

from ._database import TpsFile
from ._cipher import Key
from ._cipher import swap_groups
from ._cipher import is_single_pass_recoverable
from ._cipher import render_swap_matrix
from ._recovery import recover_key
from ._recovery import RecoveryState
from ._recovery import PartialKey
from ._export import export_table
from ._export import export_file
from ._export import dumpfile
from ._exceptions import *
