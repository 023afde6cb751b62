''' _cursor.py - random access cursor over a region of a bitstream

Copyright (c) 2022 Netherlands Forensic Institute - MIT License

All multi-byte values in a TPS file are little-endian, except for the values
in record headers (table number, record number, owning record), which are
stored big-endian. Strings are single byte strings in a configurable encoding
(ISO-8859-1 unless told otherwise).
'''

from contextlib import contextmanager as _contextmanager
from bitstring import ConstBitStream as _CB
from bitstring import BitStream as _BS

from . import _exceptions


DEFAULT_ENCODING = 'iso-8859-1'


class ByteCursor():
    ''' a cursor over a region [base, base+length) of a bitstream

    Positions handed out by and given to the cursor are relative to the start
    of the region. Sub-views created with read() share the underlying
    bitstream, so no bytes are copied.
    '''

    def __init__(s, data, base=0, length=None, encoding=DEFAULT_ENCODING, writable=False):
        ''' create a cursor over data, which can be bytes, bytearray or a bitstream

        When writable is True the bytes are copied into a mutable bitstream so
        that set_le_long() can be used. '''

        if isinstance(data, (bytes, bytearray, memoryview)):
            if writable is True:
                data = _BS(bytes=bytes(data))
            else:
                data = _CB(bytes=bytes(data))

        s._btstr = data
        s.base = base
        if length is None:
            length = data.length // 8 - base
        if base < 0 or length < 0 or (base + length) * 8 > data.length:
            raise _exceptions.OutOfRangeException('region [%d, %d) outside of data' % (base, base + length))
        s.length = length
        s.pos = 0
        s.encoding = encoding


    def __len__(s):
        return s.length


    def __repr__(s):
        return 'ByteCursor(%x/%x)' % (s.pos, s.length)


    @property
    def bitstream(s):
        return s._btstr


    def absolute(s, pos=None):
        ''' returns the offset of pos (default: current position) in the underlying data '''

        if pos is None:
            pos = s.pos
        return s.base + pos


    ##############
    # navigation #
    ##############

    def jump(s, pos):
        ''' jump to given position relative to the start of the region '''

        s.pos = pos
        return s


    def skip(s, count):
        ''' move the position count bytes forward (or backward for negative count) '''

        s.pos += count
        return s


    def remaining(s):
        return s.length - s.pos


    def exhausted(s):
        ''' True when no bytes are left to read '''

        return s.pos >= s.length


    def at_end(s):
        ''' True when at most one byte is left to read '''

        return s.pos >= s.length - 1


    @_contextmanager
    def saved_position(s, pos=None):
        ''' context manager that restores the current position on exit,
        optionally jumping to pos on entry '''

        storepos = s.pos
        if pos is not None:
            s.pos = pos
        try:
            yield s
        finally:
            s.pos = storepos


    #########
    # reads #
    #########

    def _read(s, fmt, size):
        ''' read a value of size bytes at the current position using bitstring format fmt '''

        if s.pos < 0 or s.pos + size > s.length:
            raise _exceptions.OutOfRangeException('reading %d bytes at %x crosses end of region (%x)'
                                                  % (size, s.pos, s.length))
        s._btstr.bytepos = s.base + s.pos
        value = s._btstr.read(fmt)
        s.pos += size
        return value


    def peek(s, pos):
        ''' returns the unsigned byte at pos without moving the cursor '''

        with s.saved_position(pos):
            return s.byte()


    def byte(s):
        return s._read('uint:8', 1)


    def le_short(s):
        return s._read('intle:16', 2)


    def le_ushort(s):
        return s._read('uintle:16', 2)


    def le_long(s):
        return s._read('intle:32', 4)


    def le_ulong(s):
        return s._read('uintle:32', 4)


    def be_ushort(s):
        return s._read('uintbe:16', 2)


    def be_long(s):
        return s._read('intbe:32', 4)


    def be_ulong(s):
        return s._read('uintbe:32', 4)


    def le_float(s):
        return s._read('floatle:32', 4)


    def le_double(s):
        return s._read('floatle:64', 8)


    def le_ulong_array(s, count):
        ''' read count unsigned little-endian 32-bit values '''

        if s.pos < 0 or s.pos + 4 * count > s.length:
            raise _exceptions.OutOfRangeException('reading %d longs at %x crosses end of region' % (count, s.pos))
        s._btstr.bytepos = s.base + s.pos
        values = s._btstr.readlist(['uintle:32'] * count)
        s.pos += 4 * count
        return values


    def read_bytes(s, count):
        ''' read count bytes as a copy '''

        if count == 0:
            return b''
        return s._read('bytes:%d' % count, count)


    def read(s, count):
        ''' read count bytes as a sub-view that shares the underlying bitstream '''

        if count < 0 or s.pos + count > s.length:
            raise _exceptions.OutOfRangeException('sub-view of %d bytes at %x crosses end of region (%x)'
                                                  % (count, s.pos, s.length))
        view = ByteCursor(s._btstr, s.base + s.pos, count, s.encoding)
        s.pos += count
        return view


    def remainder(s):
        ''' returns the bytes from the current position to the end as a sub-view '''

        return s.read(s.length - s.pos)


    def data(s):
        ''' returns all bytes of the region '''

        with s.saved_position(0):
            return s.read_bytes(s.length)


    ###########
    # strings #
    ###########

    def fixed_string(s, count, encoding=None):
        return s.read_bytes(count).decode(encoding or s.encoding)


    def zero_terminated_string(s, encoding=None):
        ''' read bytes up to the next zero byte, the zero byte is consumed '''

        start = (s.base + s.pos) * 8
        end = (s.base + s.length) * 8
        found = s._btstr.find('0x00', start=start, end=end, bytealigned=True)
        if not found:
            raise _exceptions.OutOfRangeException('unterminated string at %x' % (s.pos,))
        count = found[0] // 8 - s.base - s.pos
        value = s.read_bytes(count).decode(encoding or s.encoding)
        s.pos += 1
        return value


    def pascal_string(s, encoding=None):
        ''' read a string of which the length is stored in the first byte '''

        count = s.byte()
        return s.fixed_string(count, encoding)


    ##########
    # writes #
    ##########

    def set_le_long(s, value):
        ''' overwrite the 32-bit little-endian value at the current position '''

        if not isinstance(s._btstr, _BS):
            raise _exceptions.InvalidArgumentException('cursor is not writable')
        if s.pos < 0 or s.pos + 4 > s.length:
            raise _exceptions.OutOfRangeException('writing long at %x crosses end of region' % (s.pos,))
        s._btstr.overwrite(_BS(uintle=value & 0xffffffff, length=32), (s.base + s.pos) * 8)
        s.pos += 4


    #######################
    # composite encodings #
    #######################

    def _rle_count(s):
        ''' read a run-length count of one or two bytes '''

        count = s.byte()
        if count > 0x7f:
            msb = s.byte()
            count = ((msb << 7) & 0xff00) + (count & 0x7f) + 0x80 * (msb & 0x01)
        return count


    def unrle(s):
        ''' expand the run-length encoded bytes from the current position to the
        end of the region, returns a new cursor over the expanded bytes

        The compressed stream is a sequence of units. Each unit starts with a
        skip count: the number of bytes to copy verbatim. When more bytes
        follow, the last copied byte is repeated as many times as the repeat
        count that follows. Counts above 0x7f take a second byte.
        '''

        out = bytearray()
        try:
            while True:
                skip = s._rle_count()
                if skip == 0:
                    raise _exceptions.RunLengthException('bad RLE skip (0x00) at %x' % (s.pos - 1,))
                out += s.read_bytes(skip)
                if not s.exhausted():
                    s.skip(-1)
                    repeat = s.byte()
                    count = s._rle_count()
                    out += bytes([repeat]) * count
                if s.at_end():
                    break
        except _exceptions.OutOfRangeException as e:
            raise _exceptions.RunLengthException('truncated RLE data: %s' % (e,))
        return ByteCursor(bytes(out), encoding=s.encoding)


    def bcd(s, count, digits_after_decimal_point):
        ''' read count bytes as signed binary coded decimal, returns a string

        The first nibble is the sign (0 is positive), the remaining nibbles
        are the decimal digits. '''

        if count < 1:
            raise _exceptions.MalformedException('BCD value needs at least one byte')
        hexdigits = s.read_bytes(count).hex()
        sign = hexdigits[0]
        number = hexdigits[1:]
        if not all(c in '0123456789' for c in number):
            raise _exceptions.MalformedException('invalid BCD digits %s' % (hexdigits,))

        if digits_after_decimal_point > 0:
            number = number.rjust(digits_after_decimal_point, '0')
            intpart = number[:len(number) - digits_after_decimal_point]
            fraction = number[len(number) - digits_after_decimal_point:]
            number = (intpart.lstrip('0') or '0') + '.' + fraction
        else:
            number = number.lstrip('0') or '0'

        if sign != '0':
            return '-' + number
        return number


def to_file_offset(ref):
    ''' expand a page reference from the file header to a file offset '''

    return (ref << 8) + 0x200
