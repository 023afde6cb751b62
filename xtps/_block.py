''' _block.py - module that deals with blocks of pages within a TPS file

Copyright (c) 2022 Netherlands Forensic Institute - MIT License

The file header lists up to 60 blocks. A block has no page count, so the
pages inside a block are found by scanning: pages start on 256 byte
boundaries and identify themselves by their first 32-bit value, which equals
their own file offset.
'''

from collections import namedtuple as _nt
import logging as _logging

from . import _exceptions
from . import _structures

_log = _logging.getLogger(__name__)

# A block describes a region [start, end) of the file that contains pages.
_block = _nt('block', 'index start end')


def blocks(header, filelength):
    ''' Generates the blocks listed in the given file header.

    Unused entries (start and end both 0x200) and entries that start beyond
    the end of the file are skipped.

    A block contains the following fields:

        - index: index of the entry in the page reference arrays
        - start: file offset of the first byte of the block
        - end: file offset directly after the block
    '''

    for index, (start, end) in enumerate(zip(header.page_start, header.page_end)):
        if start == _structures.HEADERSIZE and end == _structures.HEADERSIZE:
            continue
        if start >= filelength:
            _log.debug('skipping block %d at %x, beyond end of file', index, start)
            continue
        yield _block(index, start, end)


def _self_identifies(cursor, pos):
    ''' returns True if the 32-bit value at pos equals pos '''

    if pos + 4 > len(cursor):
        return False
    with cursor.saved_position(pos):
        return cursor.le_ulong() == pos


def navigate(cursor, pos, end):
    ''' returns the offset of the next page at or after pos

    The position is aligned to the next 256 byte boundary, after which we
    advance in steps of 256 bytes until a page identifies itself. If none is
    found, a position at or beyond end (or the end of the data) is returned.
    '''

    misalignment = pos & (_structures.PAGE_ALIGNMENT - 1)
    if misalignment != 0:
        pos += _structures.PAGE_ALIGNMENT - misalignment

    while pos < end and pos < len(cursor) - 1:
        if _self_identifies(cursor, pos):
            break
        pos += _structures.PAGE_ALIGNMENT
    return pos


def is_complete_page(cursor, pos):
    ''' returns True if the page at pos was not partially overwritten

    A newer page that was written over the tail of an older page shows up as
    a self-identifying address inside the older page.
    '''

    with cursor.saved_position(pos + 4):
        size = cursor.le_ushort()

    ofs = 0
    while ofs < size:
        ofs += _structures.PAGE_ALIGNMENT
        if ofs < size and _self_identifies(cursor, pos + ofs):
            _log.warning('incomplete page at %x: overwritten by page at %x, skipping',
                         pos, pos + ofs)
            return False
    return True


def page_offsets(cursor, start, end):
    ''' Generates the file offsets of the complete pages within [start, end).

    After each yield the cursor position is used as the point to continue
    the scan from, so a caller that parses the page header at the yielded
    offset leaves the cursor directly after the page.
    '''

    pos = navigate(cursor, start, end)
    while pos < end and pos + 6 <= len(cursor):
        if _self_identifies(cursor, pos) and is_complete_page(cursor, pos):
            cursor.jump(pos)
            yield pos
            # continue after the page, unless the caller did not move
            if cursor.pos > pos:
                pos = cursor.pos
            else:
                pos += _structures.PAGE_ALIGNMENT
        else:
            pos += _structures.PAGE_ALIGNMENT
        pos = navigate(cursor, pos, end)


def scan(cursor, start, end):
    ''' Generates the page headers of all complete pages in the block [start, end) '''

    for offset in page_offsets(cursor, start, end):
        pghdr = _structures.pageheader(cursor, offset)
        if pghdr.addr != offset:
            raise _exceptions.MalformedException('page at %x has address %x' % (offset, pghdr.addr))
        yield offset, pghdr
