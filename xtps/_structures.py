''' _structures.py - basic structures in the TPS file format

Copyright (c) 2022 Netherlands Forensic Institute - MIT License

All parse functions take a ByteCursor and return namedtuples. Unless stated
otherwise, the cursor is left positioned directly after the parsed structure.
'''

from collections import namedtuple as _nt
from enum import Enum as _Enum

from . import _exceptions
from ._cursor import ByteCursor as _ByteCursor
from ._cursor import to_file_offset as _to_file_offset


MAGIC = 'tOpS'
HEADERSIZE = 0x200
PAGE_ALIGNMENT = 0x100
PAGEHEADERSIZE = 13
NR_PAGE_REFERENCES = 60


###############
# file header #
###############

_tpsheader = _nt('tps_header', 'addr hdrsize filelength1 filelength2 magic zeros '
                 'last_issued_row changes management_page page_start page_end')


def tpsheader(cursor, offset=0):
    ''' Parses the file header at given offset.

    A tps_header contains the following fields:

        - addr: the address of the header, always 0
        - hdrsize: the size of the header, normally 0x200
        - filelength1: the length of the file
        - filelength2: the length of the file (second copy)
        - magic: the magic string 'tOpS'
        - zeros: two zero bytes
        - last_issued_row: the last issued record number (big-endian)
        - changes: the change counter
        - management_page: file offset of the management page
        - page_start: list of 60 file offsets where blocks start
        - page_end: list of 60 file offsets where blocks end

    Raises NotATpsFileException when the header does not start with four zero
    bytes or the magic does not match. The first check typically fails on
    encrypted files.
    '''

    with cursor.saved_position(offset):
        addr = cursor.le_ulong()
        if addr != 0:
            raise _exceptions.NotATpsFileException("file doesn't start with 0x00000000, "
                                                   "it's not a TPS file or it may be encrypted")
        hdrsize = cursor.le_ushort()
        if hdrsize < HEADERSIZE:
            raise _exceptions.NotATpsFileException('header size %x too small' % (hdrsize,))
        header = cursor.read(hdrsize - 6)

        filelength1 = header.le_ulong()
        filelength2 = header.le_ulong()
        magic = header.fixed_string(4, 'ascii')
        zeros = header.le_ushort()
        last_issued_row = header.be_ulong()
        changes = header.le_ulong()
        management_page = _to_file_offset(header.le_ulong())
        page_start = [_to_file_offset(r) for r in header.le_ulong_array(NR_PAGE_REFERENCES)]
        page_end = [_to_file_offset(r) for r in header.le_ulong_array(NR_PAGE_REFERENCES)]

    if magic != MAGIC:
        raise _exceptions.NotATpsFileException('bad magic %r, not a TPS file' % (magic,))

    return _tpsheader(addr, hdrsize, filelength1, filelength2, magic, zeros,
                      last_issued_row, changes, management_page, page_start, page_end)


###############
# page header #
###############

_pageheader = _nt('page_header', 'addr size uncompressed_size uncompressed_without_header '
                  'record_count flags payload')


def pageheader(cursor, offset):
    ''' Parses the page header at the given offset of the cursor.

    A page_header contains the following fields:

        - addr: the address of the page, equal to its own file offset
        - size: the on-disk size of the page, including the header
        - uncompressed_size: size of the page after expansion
        - uncompressed_without_header: uncompressed_size minus the header
        - record_count: the number of records on this page
        - flags: non-zero flags indicate this page holds no records
        - payload: sub-view of the (possibly compressed) page payload

    The cursor is left positioned after the page.
    '''

    cursor.jump(offset)
    addr = cursor.le_ulong()
    size = cursor.le_ushort()
    if size < PAGEHEADERSIZE:
        raise _exceptions.MalformedException('page at %x has size %x, smaller than its header'
                                             % (offset, size))
    header = cursor.read(size - 6)
    uncompressed_size = header.le_ushort()
    uncompressed_without_header = header.le_ushort()
    record_count = header.le_ushort()
    flags = header.byte()
    payload = header.remainder()

    return _pageheader(addr, size, uncompressed_size, uncompressed_without_header,
                       record_count, flags, payload)


def is_compressed(pghdr):
    ''' returns True if the page payload is run-length encoded '''

    return pghdr.size != pghdr.uncompressed_size and pghdr.flags == 0


###########
# records #
###########

_record = _nt('record', 'flags record_length header_length data')


def _first_record(cursor):
    flags = cursor.byte()
    if flags & 0xc0 != 0xc0:
        raise _exceptions.MalformedException("first record on page (flags %02x) "
                                             "doesn't carry its own lengths" % (flags,))
    record_length = cursor.le_ushort()
    header_length = cursor.le_ushort()
    data = cursor.read_bytes(record_length)
    return _record(flags, record_length, header_length, data)


def _next_record(cursor, previous):
    flags = cursor.byte()
    record_length = previous.record_length
    header_length = previous.header_length
    if flags & 0x80:
        record_length = cursor.le_ushort()
    if flags & 0x40:
        header_length = cursor.le_ushort()

    copy = flags & 0x3f
    if copy > record_length or copy > len(previous.data):
        raise _exceptions.MalformedException('record copies %d bytes, but only %d available'
                                             % (copy, min(record_length, len(previous.data))))
    data = previous.data[:copy] + cursor.read_bytes(record_length - copy)
    if len(data) != record_length:
        raise _exceptions.MalformedException('record length %d, but got %d bytes'
                                             % (record_length, len(data)))
    return _record(flags, record_length, header_length, data)


def records(cursor, record_count):
    ''' Frames at most record_count records from the (expanded) page payload.

    Each record starts with a flag byte. Bit 0x80 indicates a new record
    length follows, bit 0x40 that a new header length follows. Lengths that
    are absent are inherited from the previous record. The low six bits give
    the number of leading bytes copied from the data of the previous record.

    A record contains the following fields:

        - flags: the flag byte
        - record_length: the length of the data
        - header_length: the length of the typed header at the start of data
        - data: the bytes of the record
    '''

    found = []
    if record_count == 0:
        return found

    previous = None
    while True:
        if previous is None:
            current = _first_record(cursor)
        else:
            current = _next_record(cursor, previous)
        found.append(current)
        previous = current
        if cursor.at_end() or len(found) >= record_count:
            break
    return found


#################
# typed headers #
#################

class RecordKind(_Enum):
    ''' the kind of record, determined from the typed header '''

    TABLENAME = 'TableName'
    DATA = 'Data'
    METADATA = 'Metadata'
    TABLEDEFINITION = 'TableDefinition'
    MEMO = 'Memo'
    INDEX = 'Index'
    UNKNOWN = 'Unknown'


TABLENAME_MARKER = 0xfe
DATA_MARKER = 0xf3
METADATA_MARKER = 0xf6
TABLEDEFINITION_MARKER = 0xfa
MEMO_MARKER = 0xfc


_tablename_header = _nt('tablename_header', 'kind table_number name')
_data_header = _nt('data_header', 'kind table_number record_number')
_metadata_header = _nt('metadata_header', 'kind table_number about_type')
_tabledef_header = _nt('tabledefinition_header', 'kind table_number block')
_memo_header = _nt('memo_header', 'kind table_number owning_record memo_index sequence_nr')
_index_header = _nt('index_header', 'kind table_number index_number')
_unknown_header = _nt('unknown_header', 'kind table_number')


def typed_header(rec, encoding):
    ''' Classifies the given record by its typed header.

    Returns one of the *_header namedtuples. All of them have a kind (a
    RecordKind) and a table_number field. A table name is recognised by its
    first byte alone, all other kinds need at least five header bytes.
    Anything else gives an unknown_header.
    '''

    if rec.header_length < 1 or len(rec.data) < rec.header_length:
        return _unknown_header(RecordKind.UNKNOWN, None)

    hdr = _ByteCursor(rec.data[:rec.header_length], encoding=encoding)

    if hdr.peek(0) == TABLENAME_MARKER:
        if len(rec.data) < rec.header_length + 4:
            return _unknown_header(RecordKind.UNKNOWN, None)
        hdr.skip(1)
        name = hdr.fixed_string(rec.header_length - 1)
        body = _ByteCursor(rec.data, base=rec.header_length, encoding=encoding)
        return _tablename_header(RecordKind.TABLENAME, body.be_ulong(), name)

    if rec.header_length < 5:
        return _unknown_header(RecordKind.UNKNOWN, None)

    table_number = hdr.be_ulong()
    marker = hdr.byte()

    if marker == DATA_MARKER:
        return _data_header(RecordKind.DATA, table_number, hdr.be_ulong())
    if marker == METADATA_MARKER:
        return _metadata_header(RecordKind.METADATA, table_number, hdr.byte())
    if marker == TABLEDEFINITION_MARKER:
        return _tabledef_header(RecordKind.TABLEDEFINITION, table_number, hdr.le_ushort())
    if marker == MEMO_MARKER:
        owning_record = hdr.be_ulong()
        memo_index = hdr.byte()
        sequence_nr = hdr.be_ushort()
        return _memo_header(RecordKind.MEMO, table_number, owning_record, memo_index, sequence_nr)
    return _index_header(RecordKind.INDEX, table_number, marker)


#####################
# table definitions #
#####################

FIELD_TYPES = {
    0x01: 'BYTE',
    0x02: 'SIGNED-SHORT',
    0x03: 'UNSIGNED-SHORT',
    0x04: 'DATE',
    0x05: 'TIME',
    0x06: 'SIGNED-LONG',
    0x07: 'UNSIGNED-LONG',
    0x08: 'Float',
    0x09: 'Double',
    0x0a: 'BCD',
    0x12: 'fixed-length STRING',
    0x13: 'zero-terminated STRING',
    0x14: 'pascal STRING',
    0x16: 'GROUP',
}

TYPE_BCD = 0x0a
TYPE_STRINGS = (0x12, 0x13, 0x14)
TYPE_GROUP = 0x16

_fielddef = _nt('field_definition', 'type offset name elements length flags index '
                'bcd_digits_after bcd_element_length string_length string_mask')


def fielddefinition(cursor):
    ''' Parses a single field definition.

    A field_definition contains the following fields:

        - type: the type code
        - offset: byte offset of the field within the row
        - name: the full name, including the 'PREFIX:' part
        - elements: number of elements, larger than one for arrays
        - length: total length in bytes
        - flags: field flags
        - index: ordinal of the field
        - bcd_digits_after: digits after the decimal point (BCD only)
        - bcd_element_length: length of an element (BCD only)
        - string_length: display length (strings only)
        - string_mask: picture mask (strings only)
    '''

    ftype = cursor.byte()
    offset = cursor.le_ushort()
    name = cursor.zero_terminated_string()
    elements = cursor.le_ushort()
    length = cursor.le_ushort()
    flags = cursor.le_ushort()
    index = cursor.le_ushort()

    bcd_digits_after = bcd_element_length = None
    string_length = string_mask = None
    if ftype == TYPE_BCD:
        bcd_digits_after = cursor.byte()
        bcd_element_length = cursor.byte()
    elif ftype in TYPE_STRINGS:
        string_length = cursor.le_ushort()
        string_mask = cursor.zero_terminated_string()
        if string_mask == '':
            cursor.byte()

    return _fielddef(ftype, offset, name, elements, length, flags, index,
                     bcd_digits_after, bcd_element_length, string_length, string_mask)


_memodef = _nt('memo_definition', 'external name length flags')


def _external_filename(cursor, what):
    ''' reads the optional external file name; an empty name is followed by 0x01 '''

    external = cursor.zero_terminated_string()
    if external == '':
        marker = cursor.byte()
        if marker != 0x01:
            raise _exceptions.MalformedException('Bad %s Definition, missing 0x01 after '
                                                 'zero string (%02x)' % (what, marker))
    return external


def memodefinition(cursor):
    ''' Parses a memo definition.

    A memo_definition contains the following fields:

        - external: name of the external file, empty when stored inline
        - name: the full name of the memo
        - length: maximum length
        - flags: memo flags, bit 0x04 marks a blob
    '''

    external = _external_filename(cursor, 'Memo')
    name = cursor.zero_terminated_string()
    length = cursor.le_ushort()
    flags = cursor.le_ushort()
    return _memodef(external, name, length, flags)


_indexdef = _nt('index_definition', 'external name flags fields_in_key key_fields')
_keyfield = _nt('key_field', 'field flags')


def indexdefinition(cursor):
    ''' Parses an index definition.

    An index_definition contains the following fields:

        - external: name of the external file, empty when stored inline
        - name: the full name of the index
        - flags: index flags
        - fields_in_key: the number of fields in the key
        - key_fields: list of key_field tuples (field number, field flags)
    '''

    external = _external_filename(cursor, 'Index')
    name = cursor.zero_terminated_string()
    flags = cursor.byte()
    fields_in_key = cursor.le_ushort()
    key_fields = []
    for _ in range(fields_in_key):
        field = cursor.le_ushort()
        keyflags = cursor.le_ushort()
        key_fields.append(_keyfield(field, keyflags))
    return _indexdef(external, name, flags, fields_in_key, key_fields)


_tabledef = _nt('table_definition', 'driver_version record_length nr_fields nr_memos '
                'nr_indexes fields memos indexes')


def tabledefinition(cursor):
    ''' Parses a complete table definition (the concatenation of all blocks).

    A table_definition contains the following fields:

        - driver_version: version of the driver that created the table
        - record_length: length of a data row in bytes
        - nr_fields, nr_memos, nr_indexes: counts of the definitions below
        - fields: list of field_definition tuples
        - memos: list of memo_definition tuples
        - indexes: list of index_definition tuples
    '''

    driver_version = cursor.le_ushort()
    record_length = cursor.le_ushort()
    nr_fields = cursor.le_ushort()
    nr_memos = cursor.le_ushort()
    nr_indexes = cursor.le_ushort()

    fields = [fielddefinition(cursor) for _ in range(nr_fields)]
    memos = [memodefinition(cursor) for _ in range(nr_memos)]
    indexes = [indexdefinition(cursor) for _ in range(nr_indexes)]

    return _tabledef(driver_version, record_length, nr_fields, nr_memos, nr_indexes,
                     fields, memos, indexes)


############################
# field definition helpers #
############################

def type_name(field):
    return FIELD_TYPES.get(field.type, 'unknown')


def name_without_table(name):
    ''' strips the 'PREFIX:' part from a field, memo or index name '''

    return name[name.find(':') + 1:]


def is_group(field):
    return field.type == TYPE_GROUP


def is_in_group(field, group):
    ''' True if the byte range of field lies within the byte range of group '''

    return (is_group(group) and group.offset <= field.offset
            and group.offset + group.length >= field.offset + field.length)


def is_array(field):
    return field.elements > 1


def element_size(field):
    return field.length // max(field.elements, 1)


def is_blob(memo):
    return memo.flags & 0x04 != 0
