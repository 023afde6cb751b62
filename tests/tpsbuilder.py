''' tpsbuilder.py - build small TPS files for the tests

Copyright (c) 2022 Netherlands Forensic Institute - MIT License
'''

from bitstring import pack as _pack

from xtps._cipher import Key as _Key


def be32(value):
    return _pack('uintbe:32', value).bytes


def le16(value):
    return _pack('uintle:16', value).bytes


def le32(value):
    return _pack('uintle:32', value).bytes


def zstring(value):
    return value.encode('iso-8859-1') + b'\x00'


#######
# rle #
#######

def _count(count):
    if count <= 0x7f:
        return bytes([count])
    return bytes([0x80 | (count & 0x7f), count >> 7])


def rle(data):
    ''' run-length encode data, runs of three or more bytes are compressed '''

    out = bytearray()
    literal = bytearray()
    t = 0
    while t < len(data):
        run = 1
        while t + run < len(data) and data[t + run] == data[t]:
            run += 1
        literal.append(data[t])
        if run > 2:
            out += _count(len(literal)) + literal + _count(run - 1)
            literal = bytearray()
        else:
            literal += bytes([data[t]]) * (run - 1)
        t += run
    if literal:
        out += _count(len(literal)) + literal
    return bytes(out)


###########
# records #
###########

def tablename_record(table, name):
    name = name.encode('iso-8859-1')
    return (b'\xfe' + name, be32(table))


def data_record(table, record_number, row):
    return (be32(table) + b'\xf3' + be32(record_number), row)


def metadata_record(table, about_type, payload=b'\x00\x00\x00\x00'):
    return (be32(table) + b'\xf6' + bytes([about_type]), payload)


def tabledef_records(table, definition, blocksize=None):
    ''' split the serialized definition in blocks of blocksize bytes '''

    if blocksize is None:
        blocksize = len(definition)
    parts = [definition[t:t + blocksize] for t in range(0, len(definition), blocksize)]
    return [(be32(table) + b'\xfa' + le16(block), part) for block, part in enumerate(parts)]


def memo_records(table, owner, memo_index, value, partsize=None):
    if partsize is None:
        partsize = max(len(value), 1)
    parts = [value[t:t + partsize] for t in range(0, len(value), partsize)] or [b'']
    return [(be32(table) + b'\xfc' + be32(owner) + bytes([memo_index]) + _pack('uintbe:16', seq).bytes, part)
            for seq, part in enumerate(parts)]


def blob_records(table, owner, memo_index, value, partsize=None):
    return memo_records(table, owner, memo_index, le32(len(value)) + value, partsize)


def index_record(table, index_number, key, record_number):
    return (be32(table) + bytes([index_number]), key + be32(record_number))


#####################
# table definitions #
#####################

def field(ftype, offset, name, length, elements=1, flags=0, index=0, digits_after=0, mask=''):
    out = bytes([ftype]) + le16(offset) + zstring(name) + le16(elements) + le16(length)
    out += le16(flags) + le16(index)
    if ftype == 0x0a:
        out += bytes([digits_after, length // max(elements, 1)])
    elif ftype in (0x12, 0x13, 0x14):
        out += le16(length) + zstring(mask)
        if mask == '':
            out += b'\x01'
    return out


def memo(name, length=0, flags=0, external=''):
    out = zstring(external)
    if external == '':
        out += b'\x01'
    return out + zstring(name) + le16(length) + le16(flags)


def index(name, key_fields, flags=0, external=''):
    out = zstring(external)
    if external == '':
        out += b'\x01'
    out += zstring(name) + bytes([flags]) + le16(len(key_fields))
    for keyfield in key_fields:
        out += le16(keyfield) + le16(0)
    return out


def tabledefinition(record_length, fields, memos=(), indexes=(), driver_version=1):
    out = le16(driver_version) + le16(record_length)
    out += le16(len(fields)) + le16(len(memos)) + le16(len(indexes))
    return out + b''.join(fields) + b''.join(memos) + b''.join(indexes)


#########
# pages #
#########

def frame(records):
    ''' frame (header, payload) tuples as page records, sharing prefixes '''

    out = bytearray()
    previous = None
    for header, payload in records:
        data = header + payload
        if previous is None:
            out += b'\xc0' + le16(len(data)) + le16(len(header)) + data
        else:
            pdata, pheader_length = previous
            copy = 0
            while copy < min(len(pdata), len(data), 0x3f) and pdata[copy] == data[copy]:
                copy += 1
            flags = copy
            lengths = b''
            if len(data) != len(pdata):
                flags |= 0x80
                lengths += le16(len(data))
            if len(header) != pheader_length:
                flags |= 0x40
                lengths += le16(len(header))
            out += bytes([flags]) + lengths + data[copy:]
        previous = (data, len(header))
    return bytes(out)


class TpsBuilder():
    ''' collects pages and writes a TPS file with a single block '''

    def __init__(s, fill=b'\xb0'):
        s.pages = []
        s.fill = fill
        s.last_issued_row = 0
        s.changes = 1
        # raw bytes after the pages, a multiple of 0x100
        s.tail = b''


    def add_page(s, records, compress=False, flags=0):
        s.pages.append((list(records), compress, flags))
        return s


    def _page(s, offset, records, compress, flags):
        payload = frame(records)
        uncompressed_size = 13 + len(payload)
        if compress:
            payload = rle(payload)
        size = 13 + len(payload)
        page = le32(offset) + le16(size) + le16(uncompressed_size) + le16(uncompressed_size - 13)
        page += le16(len(records)) + bytes([flags]) + payload
        padding = (-len(page)) % 0x100
        return page + s.fill * padding


    def body(s):
        ''' returns the pages, starting at file offset 0x200 '''

        out = bytearray()
        for records, compress, flags in s.pages:
            out += s._page(0x200 + len(out), records, compress, flags)
        return bytes(out) + s.tail


    def build(s, blocks=None):
        ''' returns the complete file

        The blocks argument is a list of (start, end) file offsets, by default
        a single block that holds all pages. Unused entries point at the end of
        the file. '''

        body = s.body()
        filelength = 0x200 + len(body)
        if blocks is None:
            blocks = [(0x200, filelength)]

        starts = [(start - 0x200) >> 8 for start, _ in blocks]
        ends = [(end - 0x200) >> 8 for _, end in blocks]
        unused = (filelength - 0x200) >> 8
        starts += [unused] * (60 - len(starts))
        ends += [unused] * (60 - len(ends))

        header = le32(0) + le16(0x200) + le32(filelength) + le32(filelength) + b'tOpS' + le16(0)
        header += be32(s.last_issued_row) + le32(s.changes) + le32(0)
        header += b''.join(le32(r) for r in starts) + b''.join(le32(r) for r in ends)
        assert len(header) == 0x200
        return header + body


def encrypt(data, password, blocks=None):
    ''' encrypt the header and the given blocks (default all data after the header) '''

    key = _Key(password)
    out = bytearray(data)
    key.encrypt(out, 0, 0x200)
    if blocks is None:
        blocks = [(0x200, len(out))]
    for start, end in blocks:
        key.encrypt(out, start, end - start)
    return bytes(out)


##################
# sample content #
##################

CONTACTS = 1
LOG = 2

CONTACTS_DEFINITION = tabledefinition(36, [
    field(0x06, 0, 'CON:NR', 4),
    field(0x12, 4, 'CON:NAME', 10),
    field(0x04, 14, 'CON:BORN', 4),
    field(0x05, 18, 'CON:AT', 4),
    field(0x0a, 22, 'CON:AMOUNT', 3, digits_after=2),
    field(0x01, 25, 'CON:SCORES', 3, elements=3),
    field(0x16, 28, 'CON:ADDR', 8),
    field(0x12, 28, 'CON:STREET', 6),
    field(0x03, 34, 'CON:NUMBER', 2),
    ], memos=[
    memo('CON:NOTES', 1000),
    memo('CON:PHOTO', 0, flags=0x04),
    ], indexes=[
    index('CON:KEY_NR', [0]),
    index('CON:KEY_NAME', [1, 0]),
    ])

LOG_DEFINITION = tabledefinition(6, [
    field(0x03, 0, 'LOG:CODE', 2),
    field(0x13, 2, 'LOG:TEXT', 4),
    ])


def contact_row(nr, name, born, at, amount, scores, street, number):
    ''' born as 0xYYYYMMDD, at as (hours, minutes), amount as 3 BCD bytes '''

    row = _pack('intle:32', nr).bytes + name.encode('iso-8859-1').ljust(10, b' ')
    row += le32(born) + le32((at[0] << 24) | (at[1] << 16)) + amount + bytes(scores)
    row += street.encode('iso-8859-1').ljust(6, b' ') + le16(number)
    assert len(row) == 36
    return row


def sample_builder():
    ''' a builder for a file with two tables in three pages, one of them compressed

    Table 1 (CONTACTS) has three data records, of which record 3 occurs twice,
    a text memo for record 1, a blob for record 2 and index entries. Table 2
    (LOG) has two records. The table definition of table 1 is split in blocks of
    64 bytes. '''

    builder = TpsBuilder()
    builder.last_issued_row = 3
    builder.add_page(
        [tablename_record(CONTACTS, 'CONTACTS'), tablename_record(LOG, 'LOG')]
        + tabledef_records(CONTACTS, CONTACTS_DEFINITION, 64)
        + tabledef_records(LOG, LOG_DEFINITION))
    builder.add_page([
        data_record(CONTACTS, 1, contact_row(10, 'ALICE', 0x07c6051f, (12, 30), b'\x00\x12\x34',
                                             [1, 2, 3], 'MAIN', 12)),
        data_record(CONTACTS, 2, contact_row(-20, 'BOB', 0, (0, 0), b'\xf0\x00\x50',
                                             [0, 0, 0], 'SIDE', 7)),
        data_record(CONTACTS, 3, contact_row(30, 'CAROL', 0x07d00101, (23, 59), b'\x00\x00\x00',
                                             [9, 9, 9], '', 0)),
        data_record(CONTACTS, 3, contact_row(31, 'CAROLINE', 0x07d00101, (23, 59), b'\x00\x00\x00',
                                             [9, 9, 9], '', 0)),
        ], compress=True)
    builder.add_page(
        memo_records(CONTACTS, 1, 0, b'first line\r\nsecond line', partsize=10)
        + blob_records(CONTACTS, 2, 1, b'\x89PNG\x00\x01\x02')
        + [index_record(CONTACTS, 0, be32(10), 1),
           index_record(CONTACTS, 0, be32(30), 3),
           index_record(CONTACTS, 1, b'ALICE', 1)]
        + [data_record(LOG, 1, le16(7) + b'ab\x00\x00'),
           data_record(LOG, 2, le16(8) + b'xyzw'),
           metadata_record(LOG, 0x01)])
    return builder


def sample():
    return sample_builder().build()
