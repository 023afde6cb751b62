''' _database.py - functionality related to TPS database files

Copyright (c) 2022 Netherlands Forensic Institute - MIT License

A TPS file consists of a 512 byte header, followed by blocks of pages. Each
page holds a number of records, possibly run-length encoded. Records are
typed by a small header and belong to a table: the table name, the (multi
part) table definition, data rows, memos (multi part), index entries and
metadata all live side by side in the same pages.

NOTE: pages are parsed on demand and released again after their records have
been handed out, so every aggregating method below performs a full scan.
'''

from collections import namedtuple as _nt
from collections import OrderedDict as _OD
from bitstring import ConstBitStream as _CB
import os.path as _path
import logging as _logging

from . import _exceptions
from . import _structures
from . import _block
from . import _decode
from ._cursor import ByteCursor as _ByteCursor
from ._cursor import DEFAULT_ENCODING
from ._cipher import Key as _Key
from ._cipher import BLOCKSIZE as _CIPHER_BLOCKSIZE

_log = _logging.getLogger(__name__)


##########
# events #
##########

# events generated by TpsFile.events(), next to Record objects
StartBlock = _nt('StartBlock', 'block')
StartPage = _nt('StartPage', 'page')


class TpsFile():
    ''' class representing a (possibly encrypted) TPS file '''


    def __init__(s, infile, password=None, key=None, encoding=DEFAULT_ENCODING, ignore_errors=False):
        ''' open the given file as TpsFile object

        infile can be a filepath (string) or an already opened binary file-like
        object. When a password or key (a _cipher.Key) is given, the file is
        decrypted in memory before parsing.

        With ignore_errors, pages that can not be expanded are skipped with a
        warning, and fields of unknown types are returned as raw bytes.
        '''

        if password is not None and key is not None:
            raise _exceptions.InvalidArgumentException('only one of password or key can be given')

        s.encoding = encoding
        s.ignore_errors = ignore_errors
        s._duplicates = _OD()

        if isinstance(infile, str):
            s.filename = _path.abspath(_path.expanduser(infile))
        else:
            s.filename = None

        if password is not None:
            key = _Key(password)
        s.key = key

        if key is None:
            if s.filename is not None:
                s.bitstream = _CB(filename=s.filename)
            else:
                s.bitstream = _CB(bytes=infile.read())
        else:
            if s.filename is not None:
                with open(s.filename, 'rb') as f:
                    data = bytearray(f.read())
            else:
                data = bytearray(infile.read())
            s.bitstream = _CB(bytes=bytes(s._decrypt(data, key)))

        s.cursor = _ByteCursor(s.bitstream, encoding=encoding)
        s.filelength = len(s.cursor)

        # parse the header at offset 0
        s.header = _structures.tpsheader(s.cursor, offset=0)


    @staticmethod
    def _decrypt(data, key):
        ''' decrypts the header and all blocks listed in the header, in place '''

        if len(data) < _structures.HEADERSIZE:
            raise _exceptions.NotATpsFileException('file too small for a TPS header')
        key.decrypt(data, 0, _structures.HEADERSIZE)

        header = _structures.tpsheader(_ByteCursor(bytes(data[:_structures.HEADERSIZE])))
        for blck in _block.blocks(header, len(data)):
            end = min(blck.end, len(data))
            end -= (end - blck.start) % _CIPHER_BLOCKSIZE
            if end != blck.end:
                _log.warning('block %d [%x, %x) truncated to [%x, %x) for decryption',
                             blck.index, blck.start, blck.end, blck.start, end)
            if end > blck.start:
                key.decrypt(data, blck.start, end - blck.start)
        return data


    def data(s):
        ''' returns all (decrypted) bytes of the file '''

        return s.bitstream.bytes


    @property
    def duplicates(s):
        ''' the DuplicateExceptions of the tables read by datarecords() '''

        return [dup for dups in s._duplicates.values() for dup in dups]


    ######################
    # blocks, pages, etc #
    ######################

    def blocks(s):
        ''' Generates a Block object for each block listed in the header '''

        for blck in _block.blocks(s.header, s.filelength):
            yield Block(s, blck)


    def events(s):
        ''' Generates StartBlock, StartPage and Record objects in file order.

        The records of a page are framed when the StartPage event has been
        consumed, and the page is flushed after its last record.
        '''

        for blck in s.blocks():
            yield StartBlock(blck)
            for page in blck.pages():
                yield StartPage(page)
                for record in page.parse_records():
                    yield record
                page.flush()


    def records(s):
        ''' Generates all records in file order '''

        for event in s.events():
            if isinstance(event, Record):
                yield event


    def _records_of_kind(s, kind, table=None):
        for record in s.records():
            if record.kind is kind and (table is None or record.table_number == table):
                yield record


    ##########
    # tables #
    ##########

    def tablenames(s):
        ''' returns a dictionary mapping table number to table name '''

        names = _OD()
        for record in s._records_of_kind(_structures.RecordKind.TABLENAME):
            names[record.table_number] = record.header.name
        return names


    def _tabledef_parts(s):
        ''' returns a dictionary mapping table number to list of records, indexed by block '''

        parts = _OD()
        for record in s._records_of_kind(_structures.RecordKind.TABLEDEFINITION):
            slots = parts.setdefault(record.table_number, [])
            block = record.header.block
            while len(slots) <= block:
                slots.append(None)
            if slots[block] is not None:
                _log.debug('table %d has multiple definition blocks %d, using the last',
                           record.table_number, block)
            slots[block] = record
        return parts


    def _merge_tabledef(s, table, slots):
        if any(r is None for r in slots):
            missing = [i for i, r in enumerate(slots) if r is None]
            raise _exceptions.IncompleteException('definition of table %d misses block(s) %s'
                                                  % (table, missing))
        merged = b''.join(r.payload for r in slots)
        return _structures.tabledefinition(_ByteCursor(merged, encoding=s.encoding))


    def tabledefinitions(s):
        ''' returns a dictionary mapping table number to table definition

        Tables of which one or more definition blocks are missing are dropped
        with a warning.
        '''

        tables = _OD()
        for table, slots in sorted(s._tabledef_parts().items()):
            try:
                tables[table] = s._merge_tabledef(table, slots)
            except _exceptions.IncompleteException as e:
                _log.warning('%s, skipping table', e)
        return tables


    def tabledefinition(s, table):
        ''' returns the table definition of the given table

        Raises IncompleteException if definition blocks are missing and
        InvalidArgumentException if the table has no definition at all.
        '''

        parts = s._tabledef_parts()
        if table not in parts:
            raise _exceptions.InvalidArgumentException('no definition for table %d' % (table,))
        return s._merge_tabledef(table, parts[table])


    def tablename(s, table):
        ''' returns the name of the given table, or None '''

        return s.tablenames().get(table)


    ###########
    # records #
    ###########

    def datarecords(s, table, tabledef=None, sort=False):
        ''' returns a list of decoded data records of the given table

        A data_record contains the following fields:

            - table_number: the table the record belongs to
            - record_number: the record number
            - values: list of decoded values, one per field
            - record: the underlying Record object

        When multiple records share a record number, the first one is kept,
        the others are logged and registered in the duplicates attribute,
        replacing those of an earlier call for the same table. With sort, the
        records are ordered by record number, otherwise by position in the
        file.
        '''

        if tabledef is None:
            tabledef = s.tabledefinition(table)
        decoder = _decode.RowDecoder(tabledef, s.encoding, s.ignore_errors)

        found = _OD()
        duplicates = s._duplicates[table] = []
        for record in s._records_of_kind(_structures.RecordKind.DATA, table):
            recnr = record.header.record_number
            if recnr in found:
                dup = _exceptions.DuplicateException('table %d: duplicate record %d at page %x'
                                                     % (table, recnr, record.page_offset))
                _log.warning('%s', dup)
                duplicates.append(dup)
                continue
            found[recnr] = _data_record(table, recnr, decoder.decode(record.payload), record)

        records = list(found.values())
        if sort is True:
            records.sort(key=lambda r: r.record_number)
        return records


    def memos(s, table, memo_index, tabledef=None):
        ''' returns a dictionary mapping owning record number to memo

        A memo contains the following fields:

            - table_number: the table the memo belongs to
            - memo_index: index of the memo in the table definition
            - owning_record: the record number of the owning data record
            - is_blob: True if the memo is a blob
            - value: the text (memo) or bytes (blob)

        Memos of which one or more parts are missing are dropped with a warning.
        '''

        if tabledef is None:
            tabledef = s.tabledefinition(table)
        if memo_index < 0 or memo_index >= len(tabledef.memos):
            raise _exceptions.InvalidArgumentException('table %d has no memo %d' % (table, memo_index))
        is_blob = _structures.is_blob(tabledef.memos[memo_index])

        groups = _OD()
        for record in s._records_of_kind(_structures.RecordKind.MEMO, table):
            if record.header.memo_index != memo_index:
                continue
            slots = groups.setdefault(record.header.owning_record, [])
            seqnr = record.header.sequence_nr
            while len(slots) <= seqnr:
                slots.append(None)
            slots[seqnr] = record

        memos = _OD()
        for owner, slots in sorted(groups.items()):
            if any(r is None for r in slots):
                _log.warning('table %d: memo %d of record %d is incomplete, skipping',
                             table, memo_index, owner)
                continue
            data = b''.join(r.payload for r in slots)
            if is_blob:
                value = s._blob(table, memo_index, owner, data)
            else:
                value = data.decode(s.encoding)
            memos[owner] = _memo(table, memo_index, owner, is_blob, value)
        return memos


    def _blob(s, table, memo_index, owner, data):
        ''' a blob is a 32-bit length followed by the data '''

        cursor = _ByteCursor(data)
        length = cursor.le_ulong()
        if length > cursor.remaining():
            msg = ('table %d: blob %d of record %d declares %d bytes, only %d available'
                   % (table, memo_index, owner, length, cursor.remaining()))
            if s.ignore_errors is True:
                _log.warning('%s, using raw bytes', msg)
                return data
            raise _exceptions.MalformedException(msg)
        return cursor.read_bytes(length)


    def indexes(s, table, index=-1):
        ''' returns the index records of the given table, optionally only of the given index '''

        return [r for r in s._records_of_kind(_structures.RecordKind.INDEX, table)
                if index < 0 or r.header.index_number == index]


    def index_record_ids(s, table, index=-1):
        ''' returns the record numbers referenced by the index records '''

        return [r.record_number for r in s.indexes(table, index)]


    def metadata(s, table):
        ''' returns the metadata records of the given table '''

        return list(s._records_of_kind(_structures.RecordKind.METADATA, table))


_data_record = _nt('data_record', 'table_number record_number values record')
_memo = _nt('memo', 'table_number memo_index owning_record is_blob value')


class Block():
    ''' wrapper for a block of pages '''

    def __init__(s, tpsfile, blck):
        ''' initialize Block object from the parsed block '''

        s.tpsfile = tpsfile
        s.index = blck.index
        s.start = blck.start
        s.end = blck.end


    def __repr__(s):
        return 'Block(%d, %x-%x)' % (s.index, s.start, s.end)


    def pages(s):
        ''' Generates the Page objects of the complete pages within this block '''

        cursor = _ByteCursor(s.tpsfile.bitstream, encoding=s.tpsfile.encoding)
        for offset, pghdr in _block.scan(cursor, s.start, s.end):
            yield Page(s.tpsfile, pghdr, offset, s.index)


class Page():
    ''' wrapper for parsed pages with some extra meta-data

    Expanding the payload and framing its records happens on parse_records(),
    flush() releases both again.
    '''

    def __init__(s, tpsfile, pghdr, offset, block_index=None):
        ''' initialize Page object from the parsed page header '''

        s.tpsfile = tpsfile
        s.offset = offset
        s.block_index = block_index
        s.header = pghdr
        s.addr = pghdr.addr
        s.size = pghdr.size
        s.uncompressed_size = pghdr.uncompressed_size
        s.record_count = pghdr.record_count
        s.flags = pghdr.flags
        s._data = None
        s._records = None


    def __repr__(s):
        return 'Page(%x, size=%x, records=%d, flags=%02x)' % (s.offset, s.size, s.record_count, s.flags)


    def is_compressed(s):
        return _structures.is_compressed(s.header)


    def data(s):
        ''' returns a cursor over the (expanded) payload of the page '''

        if s._data is None:
            payload = s.header.payload
            payload.jump(0)
            if s.is_compressed():
                s._data = payload.unrle()
            else:
                s._data = payload
        s._data.jump(0)
        return s._data


    def parse_records(s):
        ''' returns the list of Record objects on this page

        Pages with non-zero flags do not hold records. With ignore_errors set on
        the file, pages of which the payload can not be expanded are logged and
        yield no records.
        '''

        if s._records is not None:
            return s._records
        if s.flags != 0:
            s._records = []
            return s._records

        try:
            cursor = s.data()
        except _exceptions.RunLengthException as e:
            if s.tpsfile.ignore_errors is True:
                _log.warning('bad RLE data in page at %x, skipping: %s', s.offset, e)
                s._records = []
                return s._records
            raise

        framed = _structures.records(cursor, s.record_count)
        s._records = [Record(s.tpsfile, rec, s.offset, s.block_index, idx)
                      for idx, rec in enumerate(framed)]
        return s._records


    def flush(s):
        ''' release the expanded payload and records '''

        s._data = None
        s._records = None


class Record():
    ''' wrapper for a framed record with its typed header

    A Record has the following fields:

        - page_offset: offset of the page that contains the record
        - block_index: index of the block that contains the page
        - record_index: index of the record on the page
        - flags, record_length, header_length: framing information
        - data: all bytes of the record, including the typed header
        - header: typed header namedtuple (see _structures.typed_header)
        - kind: the RecordKind of the header
        - table_number: the table the record belongs to
        - payload: the bytes after the typed header
    '''

    def __init__(s, tpsfile, rec, page_offset=None, block_index=None, record_index=None):
        ''' initialize Record from given framed record '''

        s.page_offset = page_offset
        s.block_index = block_index
        s.record_index = record_index
        s.flags = rec.flags
        s.record_length = rec.record_length
        s.header_length = rec.header_length
        s.data = rec.data
        s.header = _structures.typed_header(rec, tpsfile.encoding)
        s.kind = s.header.kind
        s.table_number = s.header.table_number
        s.payload = rec.data[rec.header_length:]


    def __repr__(s):
        return 'Record(%s, table=%s, %d bytes)' % (s.kind.value, s.table_number, s.record_length)


    @property
    def record_number(s):
        ''' the record number of a data record, or the one referenced by an index record '''

        if s.kind is _structures.RecordKind.DATA:
            return s.header.record_number
        if s.kind is _structures.RecordKind.INDEX:
            if len(s.data) < 4:
                raise _exceptions.MalformedException('index record too short for a record number')
            return _ByteCursor(s.data, base=len(s.data) - 4).be_ulong()
        return None
