''' _export.py - export tables of TPS files to xlsx, tsv, csv and text

Copyright (c) 2022 Netherlands Forensic Institute - MIT License
'''

import re as _re
import csv as _csv
import datetime as _datetime
import os.path as _path
import logging as _logging
import xlsxwriter as _xlsxwriter

from . import _exceptions
from . import _structures
from ._decode import RecordViewer as _RecordViewer

_log = _logging.getLogger(__name__)


def _cell(value):
    ''' represent a value as text '''

    if value is None:
        return ''
    if isinstance(value, _datetime.time):
        return value.strftime('%H:%M')
    if isinstance(value, _datetime.date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return str(value)


def _refuse_existing(filename):
    if _path.exists(filename):
        raise _exceptions.UserFeedbackException('refusing to overwrite %s' % (filename,))


###########
# writers #
###########

class XLSXWriter():
    ''' writes rows to the sheets of an xlsx workbook '''

    def __init__(s, filename):
        _refuse_existing(filename)
        s.filename = filename
        s.workbook = _xlsxwriter.Workbook(filename)
        s.sheets = {}
        s.sheetnames = {}
        s.rows = {}
        s.date_format = s.workbook.add_format({'num_format': 'yyyy-mm-dd'})
        s.time_format = s.workbook.add_format({'num_format': 'hh:mm'})


    def __enter__(s):
        return s


    def __exit__(s, exc_type, exc_value, traceback):
        s.workbook.close()


    def _sheetname(s, name):
        ''' a valid and unused sheet name for name

        Excel limits sheet names to 31 characters, does not allow any of
        []:*?/\\ or a leading or trailing apostrophe, and compares names case
        insensitively. '''

        base = _re.sub(r"[\[\]:*?/\\]", '_', name).strip("'") or 'sheet'
        sheetname = base[:31].rstrip("'")
        used = set(n.lower() for n in s.sheetnames.values())
        nr = 1
        while sheetname.lower() in used:
            nr += 1
            suffix = ' (%d)' % (nr,)
            sheetname = base[:31 - len(suffix)] + suffix
        return sheetname


    def add_sheet(s, name):
        sheetname = s._sheetname(name)
        s.sheetnames[name] = sheetname
        s.sheets[name] = s.workbook.add_worksheet(sheetname)
        s.rows[name] = 0


    def write_header(s, sheetname, colnames):
        sheet = s.sheets[sheetname]
        bold = s.workbook.add_format({'bold': True})
        for col, name in enumerate(colnames):
            sheet.write_string(s.rows[sheetname], col, name, bold)
        s.rows[sheetname] += 1


    def write_row(s, sheetname, values):
        sheet = s.sheets[sheetname]
        row = s.rows[sheetname]
        for col, value in enumerate(values):
            if value is None:
                continue
            if isinstance(value, _datetime.time):
                sheet.write_datetime(row, col, value, s.time_format)
            elif isinstance(value, _datetime.date):
                sheet.write_datetime(row, col, _datetime.datetime(value.year, value.month, value.day),
                                     s.date_format)
            elif isinstance(value, bool):
                sheet.write_boolean(row, col, value)
            elif isinstance(value, (int, float)):
                sheet.write_number(row, col, value)
            else:
                sheet.write_string(row, col, _cell(value))
        s.rows[sheetname] += 1


class TSVWriter():
    ''' writes rows to a tab separated file '''

    def __init__(s, filename, separator='\t', quotechar='"', encoding='utf-8'):
        _refuse_existing(filename)
        s.filename = filename
        s.file = open(filename, 'w', newline='', encoding=encoding)
        s.writer = _csv.writer(s.file, delimiter=separator, quotechar=quotechar,
                               quoting=_csv.QUOTE_MINIMAL, lineterminator='\n')


    def __enter__(s):
        return s


    def __exit__(s, exc_type, exc_value, traceback):
        s.file.close()


    def write_header(s, colnames):
        s.writer.writerow(colnames)


    def write_row(s, values):
        s.writer.writerow([_cell(v) for v in values])


class CSVWriter(TSVWriter):
    ''' writes rows to a comma separated file, strings are always quoted '''

    def __init__(s, filename, separator=',', quotechar='"', encoding='utf-8'):
        super().__init__(filename, separator, quotechar, encoding)
        s.writer = _csv.writer(s.file, delimiter=separator, quotechar=quotechar,
                               quoting=_csv.QUOTE_NONNUMERIC, lineterminator='\n')


    def write_row(s, values):
        row = []
        for v in values:
            if v is None:
                row.append('')
            elif isinstance(v, (int, float)) and not isinstance(v, bool):
                row.append(v)
            else:
                row.append(_cell(v))
        s.writer.writerow(row)


##########
# tables #
##########

def _blobname(outfile, record_number, memo_index):
    base = _path.splitext(_path.basename(outfile))[0]
    return '%s-%d-%d.bin' % (base, record_number, memo_index)


def table_rows(tpsfile, table, outfile=None, sort=False, tabledef=None):
    ''' Generates the column names, followed by a list of values per record.

    With an outfile, blob memos are written next to it as
    <base>-<recno>-<memo>.bin and the row holds the name of that file.
    Otherwise the row holds the bytes of the blob. '''

    if tabledef is None:
        tabledef = tpsfile.tabledefinition(table)
    viewer = _RecordViewer(tabledef, table)
    memos = [tpsfile.memos(table, i, tabledef) for i in range(len(tabledef.memos))]
    blobs = [_structures.is_blob(m) for m in tabledef.memos]
    if outfile is None:
        blobs = [False] * len(blobs)
    else:
        outdir = _path.dirname(_path.abspath(outfile))

    yield viewer.colnames

    for record in tpsfile.datarecords(table, tabledef, sort):
        values = list(viewer.user_view(record, memos).values.values())
        for colnr, col in enumerate(viewer.columns):
            if col.memo is None or not blobs[col.memo] or values[colnr] is None:
                continue
            name = _blobname(outfile, record.record_number, col.memo)
            filename = _path.join(outdir, name)
            _refuse_existing(filename)
            with open(filename, 'wb') as f:
                f.write(values[colnr])
            values[colnr] = name
        yield values


def _sheetname(tpsfile, table):
    name = tpsfile.tablename(table)
    if name is None:
        return 'table %d' % (table,)
    return '%d %s' % (table, name)


def export_table(tpsfile, table, outfile, fmt='xlsx', sort=False, separator=None, quote='"'):
    ''' export a single table to outfile, returns the number of records written

    The fmt argument is one of 'xlsx', 'tsv' or 'csv'. '''

    count = 0
    rows = table_rows(tpsfile, table, outfile, sort)
    if fmt == 'xlsx':
        with XLSXWriter(outfile) as x:
            sheet = _sheetname(tpsfile, table)
            x.add_sheet(sheet)
            x.write_header(sheet, next(rows))
            for values in rows:
                x.write_row(sheet, values)
                count += 1
    elif fmt in ('tsv', 'csv'):
        writercls = TSVWriter if fmt == 'tsv' else CSVWriter
        if separator is None:
            separator = '\t' if fmt == 'tsv' else ','
        with writercls(outfile, separator, quote) as w:
            w.write_header(next(rows))
            for values in rows:
                w.write_row(values)
                count += 1
    else:
        raise _exceptions.InvalidArgumentException('unknown export format %s' % (fmt,))
    _log.info('exported %d records of table %d to %s', count, table, outfile)
    return count


def export_file(tpsfile, outfile, fmt='xlsx', tables=None, sort=False, separator=None, quote='"'):
    ''' export the given tables (default all) of the file

    An xlsx workbook gets one sheet per table. For tsv and csv, each table
    gets its own file; with more than one table these are named
    <base>.<table number>.<ext>. Returns a dictionary mapping table number to
    the number of records written.
    '''

    tabledefs = tpsfile.tabledefinitions()
    if tables is None:
        tables = list(tabledefs.keys())
    for table in tables:
        if table not in tabledefs:
            raise _exceptions.UserFeedbackException('no (complete) definition for table %d' % (table,))

    counts = {}
    if fmt == 'xlsx':
        with XLSXWriter(outfile) as x:
            for table in tables:
                sheet = _sheetname(tpsfile, table)
                x.add_sheet(sheet)
                rows = table_rows(tpsfile, table, outfile, sort, tabledefs[table])
                x.write_header(sheet, next(rows))
                counts[table] = 0
                for values in rows:
                    x.write_row(sheet, values)
                    counts[table] += 1
        return counts

    for table in tables:
        filename = outfile
        if len(tables) > 1:
            base, ext = _path.splitext(outfile)
            filename = '%s.%d%s' % (base, table, ext)
        counts[table] = export_table(tpsfile, table, filename, fmt, sort, separator, quote)
    return counts


###############
# text output #
###############

def describe_tables(tpsfile, filename=None):
    ''' returns a textual description of the table definitions of the file '''

    tabledefs = tpsfile.tabledefinitions()
    names = tpsfile.tablenames()
    if filename is None:
        filename = _path.basename(tpsfile.filename) if tpsfile.filename else '<stream>'

    lines = ['%s : contains %d table(s).' % (filename, len(tabledefs))]
    for table, tdef in tabledefs.items():
        lines.append('Table %d : %d Fields, %d Indexes, %d Memos, %d bytes per row, '
                     'driver version %d.' % (table, len(tdef.fields), len(tdef.indexes),
                                             len(tdef.memos), tdef.record_length, tdef.driver_version))
        if table in names:
            lines.append('Name  %r' % (names[table],))
        for field in tdef.fields:
            if _structures.is_array(field):
                ftype = ' array[%d] of %s' % (field.elements, _structures.type_name(field))
            else:
                ftype = ' of type %s' % (_structures.type_name(field),)
            lines.append("Field '%s'%s at offset %d, %d bytes" % (field.name, ftype, field.offset, field.length))
        for index in tdef.indexes:
            lines.append("Index '%s' on %d fields" % (index.name, index.fields_in_key))
            for keyfield in index.key_fields:
                if keyfield.field < len(tdef.fields):
                    lines.append('  %s' % (tdef.fields[keyfield.field].name,))
                else:
                    lines.append('  <field %d>' % (keyfield.field,))
        for memo in tdef.memos:
            lines.append("Memo  '%s' with flags %d" % (memo.name, memo.flags))
    return '\n'.join(lines) + '\n'


def describe_indexes(tpsfile):
    ''' returns the record numbers referenced by each index, as text '''

    lines = []
    for table, tdef in tpsfile.tabledefinitions().items():
        for idx, index in enumerate(tdef.indexes):
            ids = tpsfile.index_record_ids(table, idx)
            lines.append('%s : %s' % (index.name, ', '.join(str(i) for i in ids)))
    return '\n'.join(lines) + '\n'


def describe_layout(tpsfile, out):
    ''' write the blocks, pages and records of the file to out '''

    from ._database import StartBlock, StartPage
    for event in tpsfile.events():
        if isinstance(event, StartBlock):
            out.write('%r\n' % (event.block,))
        elif isinstance(event, StartPage):
            out.write('  %r\n' % (event.page,))
        else:
            out.write('    %r\n' % (event,))


def describe_header(tpsfile):
    hdr = tpsfile.header
    lines = ['magic           : %s' % (hdr.magic,),
             'header size     : %x' % (hdr.hdrsize,),
             'file length     : %d (%d)' % (hdr.filelength1, hdr.filelength2),
             'last issued row : %d' % (hdr.last_issued_row,),
             'changes         : %d' % (hdr.changes,),
             'management page : %x' % (hdr.management_page,),
             'encrypted       : %s' % ('yes' if tpsfile.key is not None else 'no',)]
    return '\n'.join(lines) + '\n'


def dumpfile(tpsfile, out, tables=None):
    ''' dump all data records of the given tables (default all) to out as text '''

    tabledefs = tpsfile.tabledefinitions()
    names = tpsfile.tablenames()
    if tables is None:
        tables = list(tabledefs.keys())

    for table in tables:
        if table not in tabledefs:
            raise _exceptions.UserFeedbackException('no (complete) definition for table %d' % (table,))
        out.write('table %d (%s)\n' % (table, names.get(table, '')))
        rows = table_rows(tpsfile, table, tabledef=tabledefs[table])
        out.write('\t'.join(next(rows)) + '\n')
        for values in rows:
            out.write('\t'.join(_cell(v) for v in values) + '\n')
        out.write('\n')
