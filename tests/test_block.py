''' test_block.py - tests for the page scanner

Copyright (c) 2022 Netherlands Forensic Institute - MIT License
'''

import logging

from xtps import _block
from xtps import _structures
from xtps._cursor import ByteCursor

from tpsbuilder import le32


def _region(*pages):
    ''' 1k of zeros with (addr, size) page headers at addr '''

    data = bytearray(4 * 256)
    for addr, size in pages:
        data[addr:addr + 6] = le32(addr) + size.to_bytes(2, 'little')
    return ByteCursor(bytes(data))


def test_two_pages():
    pages = list(_block.scan(_region((0, 0x200), (0x200, 0x100)), 0, 0x300))
    assert [ofs for ofs, _ in pages] == [0, 0x200]
    assert [pghdr.size for _, pghdr in pages] == [0x200, 0x100]


def test_two_pages_with_gap():
    pages = list(_block.scan(_region((0, 0x100), (0x200, 0x100)), 0, 0x300))
    assert [ofs for ofs, _ in pages] == [0, 0x200]
    assert [pghdr.size for _, pghdr in pages] == [0x100, 0x100]


def test_skip_partially_overwritten_page(caplog):
    with caplog.at_level(logging.WARNING):
        pages = list(_block.scan(_region((0, 0x300), (0x100, 0x200)), 0, 0x300))
    assert len(pages) == 1
    assert pages[0][1].addr == 0x100
    assert pages[0][1].size == 0x200
    assert 'incomplete page' in caplog.text


def test_navigate():
    cursor = _region((0x200, 0x100))
    assert _block.navigate(cursor, 0x10, 0x400) == 0x200
    assert _block.navigate(cursor, 0x200, 0x400) == 0x200
    # nothing left before end
    assert _block.navigate(cursor, 0x210, 0x300) >= 0x300


def test_blocks(sample_bytes):
    header = _structures.tpsheader(ByteCursor(sample_bytes))
    blocks = list(_block.blocks(header, len(sample_bytes)))
    assert len(blocks) == 1
    assert (blocks[0].index, blocks[0].start, blocks[0].end) == (0, 0x200, len(sample_bytes))


def test_blocks_beyond_end(sample_bytes):
    header = _structures.tpsheader(ByteCursor(sample_bytes))
    header = header._replace(page_start=[0x200, 0x10000] + header.page_start[2:],
                             page_end=[header.page_end[0], 0x10100] + header.page_end[2:])
    blocks = list(_block.blocks(header, len(sample_bytes)))
    assert [b.index for b in blocks] == [0]
