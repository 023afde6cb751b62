''' _decode.py - module containing functionality to decode data records

Copyright (c) 2022 Netherlands Forensic Institute - MIT License
'''

from collections import namedtuple as _nt
from collections import OrderedDict as _OD
import datetime as _datetime
import logging as _logging

from . import _exceptions
from . import _structures
from ._cursor import ByteCursor as _ByteCursor

_log = _logging.getLogger(__name__)


# fixed sizes of the numeric types
_SIZES = {0x01: 1, 0x02: 2, 0x03: 2, 0x06: 4, 0x07: 4, 0x08: 4, 0x09: 8}


class RowDecoder():
    ''' decoder for the rows of a data record '''

    def __init__(s, tabledef, encoding, ignore_errors=False):
        ''' initialize the row decoder

        The tabledef argument should be a table_definition as returned by
        _structures.tabledefinition, encoding the string encoding of the file.
        When ignore_errors is True, fields of an unsupported type are returned
        as raw bytes instead of raising UnsupportedException.
        '''

        s.tabledef = tabledef
        s.encoding = encoding
        s.ignore_errors = ignore_errors


    def decode(s, row):
        ''' decode the given row bytes, returns a list with one value per field

        Array fields are decoded as a list of values, one per element.
        '''

        cursor = _ByteCursor(row, encoding=s.encoding)
        values = []
        for field in s.tabledef.fields:
            if _structures.is_array(field):
                size = _structures.element_size(field)
                values.append([s._field(cursor, field, field.offset + size * t, size)
                               for t in range(field.elements)])
            else:
                values.append(s._field(cursor, field, field.offset, field.length))
        return values


    def _field(s, cursor, field, offset, length):
        ''' decode a single value of length bytes at offset '''

        ftype = field.type
        if ftype in _SIZES and _SIZES[ftype] != length:
            raise _exceptions.MalformedException('field %s of type %s has length %d, expected %d'
                                                 % (field.name, _structures.type_name(field),
                                                    length, _SIZES[ftype]))

        cursor.jump(offset)

        if ftype == 0x01:
            return cursor.byte()
        if ftype == 0x02:
            return cursor.le_short()
        if ftype == 0x03:
            return cursor.le_ushort()
        if ftype == 0x04:
            return s._date(field, cursor.le_ulong())
        if ftype == 0x05:
            return s._time(field, cursor.le_ulong())
        if ftype == 0x06:
            return cursor.le_long()
        if ftype == 0x07:
            return cursor.le_ulong()
        if ftype == 0x08:
            return cursor.le_float()
        if ftype == 0x09:
            return cursor.le_double()
        if ftype == 0x0a:
            return cursor.bcd(length, field.bcd_digits_after)
        if ftype == 0x12:
            return cursor.fixed_string(length)
        if ftype == 0x13:
            raw = cursor.read_bytes(length)
            return raw.split(b'\x00', 1)[0].decode(s.encoding)
        if ftype == 0x14:
            return cursor.pascal_string()
        if ftype == 0x16:
            return cursor.read_bytes(length)

        if s.ignore_errors is True:
            _log.warning('unsupported type %02x for field %s, using raw bytes', ftype, field.name)
            return cursor.read_bytes(length)
        raise _exceptions.UnsupportedException('unsupported type %02x for field %s (%d bytes)'
                                               % (ftype, field.name, length))


    def _date(s, field, value):
        ''' packed as 0xYYYYMMDD, zero is no date '''

        if value == 0:
            return None
        try:
            return _datetime.date(value >> 16, (value >> 8) & 0xff, value & 0xff)
        except ValueError:
            if s.ignore_errors is True:
                _log.warning('invalid date %08x in field %s', value, field.name)
                return value
            raise _exceptions.MalformedException('invalid date %08x in field %s' % (value, field.name))


    def _time(s, field, value):
        ''' hours in bits 30..24 and minutes in bits 23..16 '''

        hours = (value & 0x7f000000) >> 24
        minutes = (value & 0x00ff0000) >> 16
        try:
            return _datetime.time(hours, minutes)
        except ValueError:
            if s.ignore_errors is True:
                _log.warning('invalid time %08x in field %s', value, field.name)
                return value
            raise _exceptions.MalformedException('invalid time %08x in field %s' % (value, field.name))


#################
# column naming #
#################

def csvname(name):
    ''' converts a TPS name to a more readable column name

    The first character and each character after an underscore are upper
    case, underscores become spaces and all other characters are lower case.
    '''

    out = []
    first = True
    for c in name:
        if first:
            out.append(c.upper())
            first = False
        elif c == '_':
            out.append(' ')
        else:
            out.append(c.lower())
        if c == '_':
            first = True
    return ''.join(out)


def group_prefix(fields, field):
    ''' returns 'GROUP.' for the first group that contains field, or '' '''

    for f in fields:
        if _structures.is_group(f) and f is not field and _structures.is_in_group(field, f):
            return _structures.name_without_table(f.name) + '.'
    return ''


_column = _nt('column', 'name field element memo hidden')


def columns(tabledef):
    ''' returns the list of columns for the given table definition

    A column contains the following fields:

        - name: the readable column name
        - field: index of the field in the table definition, or None
        - element: index of the element in an array field, or None
        - memo: index of the memo in the table definition, or None
        - hidden: True for group columns, which overlap other columns
    '''

    cols = [_column('Rec No', None, None, None, False)]
    for fieldnr, field in enumerate(tabledef.fields):
        name = csvname(group_prefix(tabledef.fields, field) +
                       _structures.name_without_table(field.name))
        hidden = _structures.is_group(field)
        if _structures.is_array(field):
            for idx in range(field.elements):
                cols.append(_column('%s[%d]' % (name, idx), fieldnr, idx, None, hidden))
        else:
            cols.append(_column(name, fieldnr, None, None, hidden))
    for memonr, memo in enumerate(tabledef.memos):
        cols.append(_column(csvname(_structures.name_without_table(memo.name)),
                            None, None, memonr, False))
    return cols


class RecordViewer():
    ''' class with functionality to create different views of a data record '''

    def __init__(s, tabledef, table_number=None):
        ''' initialize the RecordViewer '''

        s.tabledef = tabledef
        s.table_number = table_number
        s.columns = [c for c in columns(tabledef) if not c.hidden]
        s.colnames = [c.name for c in s.columns]

        # a simple view of a data record, consisting of record number and value dict
        s._user_view = _nt('record', 'record_number values')

        # a detailed view of a data record, including info on location
        s._detailed_view = _nt('record', 'table_number block_index page_offset record_index '
                                         'record_length header_length record_number values')


    def _values(s, record, memos):
        ''' returns an ordered dictionary of column name to value '''

        _values = _OD()
        for col in s.columns:
            if col.field is None and col.memo is None:
                _values[col.name] = record.record_number
            elif col.memo is not None:
                memo = memos[col.memo].get(record.record_number) if memos else None
                _values[col.name] = memo.value if memo is not None else None
            elif col.element is not None:
                _values[col.name] = record.values[col.field][col.element]
            else:
                _values[col.name] = record.values[col.field]
        return _values


    def user_view(s, record, memos=None):
        ''' Represent given data record as simple 'user' record.

        The memos argument is an optional list, one entry per memo in the
        table definition, of dictionaries mapping owning record number to memo.
        '''

        return s._user_view(record.record_number, s._values(record, memos))


    def detailed_view(s, record, memos=None):
        ''' Represent given data record including its location in the file '''

        rec = record.record
        return s._detailed_view(rec.table_number, rec.block_index, rec.page_offset,
                                rec.record_index, rec.record_length, rec.header_length,
                                record.record_number, s._values(record, memos))
