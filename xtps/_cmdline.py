#!/usr/bin/env python3

''' _cmdline.py - commandline interface for xtps

Copyright (c) 2022 Netherlands Forensic Institute - MIT License
'''

import sys as _sys
import signal as _signal
import logging as _logging
import threading as _threading
import argparse as _argparse
from os import path as _path

from ._database import TpsFile
from ._cipher import Key as _Key
from ._cipher import KEYSIZE as _KEYSIZE
from ._cipher import swap_groups as _swap_groups
from ._cipher import render_swap_matrix as _render_swap_matrix
from ._cipher import is_single_pass_recoverable as _is_single_pass_recoverable
from . import _export
from . import _recovery
from . import _exceptions

_log = _logging.getLogger(__name__)


def _parser():
    ''' argument parser '''

    parser = _argparse.ArgumentParser(
        prog='xtps',
        formatter_class = _argparse.RawDescriptionHelpFormatter,
        description = 'TPS file reader and key recovery. ',
        epilog = 'Example usage: \n' +\
                 ' xtps info --tables file.tps\n' +\
                 ' xtps export --password secret file.tps output.xlsx\n' +\
                 ' xtps recover --checkpoint state.bin --keyfile file.key file.tps\n' +\
                 '\n'
        )

    parser.add_argument('--version', help='print version and exit', action='store_true',
                        default=False)

    # options shared by all sub-commands
    common = _argparse.ArgumentParser(add_help=False)
    common.add_argument('-v', '--verbose', action='count', default=0, help='more logging (repeatable)')
    common.add_argument('-q', '--quiet', action='store_true', help='only log errors')
    common.add_argument('--encoding', metavar='ENCODING', default='iso-8859-1',
                        help='string encoding of the file (default iso-8859-1)')
    common.add_argument('--ignore-errors', action='store_true', dest='ignore_errors',
                        help='skip unreadable pages and return unsupported fields as raw bytes')

    # options to open an encrypted file
    keyed = _argparse.ArgumentParser(add_help=False)
    k_assoc = keyed.add_mutually_exclusive_group()
    k_assoc.add_argument('--password', metavar='PASSWORD', help='password of an encrypted file')
    k_assoc.add_argument('--keyfile', metavar='KEYFILE', help='file with the 64 byte key')

    subparsers = parser.add_subparsers(help='sub-command help')

    p_info = subparsers.add_parser('info', parents=[common, keyed], help='show information about a file')
    p_info.add_argument('tpsfile', metavar='FILE', help='TPS file')
    p_info.add_argument('--tables', action='store_true', help='print the table definitions')
    p_info.add_argument('--layout', action='store_true', help='print all blocks, pages and records')
    p_info.add_argument('--indexes', action='store_true', help='print the record numbers of each index')
    p_info.add_argument('--blocks', action='store_true', help='print the blocks and pages')
    p_info.set_defaults(func=fileinfo)

    p_dump = subparsers.add_parser('dump', parents=[common, keyed], help='dump all tables to stdout')
    p_dump.add_argument('tpsfile', metavar='FILE', help='TPS file')
    p_dump.add_argument('--table', metavar='TABLE', type=int, help='limit to single table')
    p_dump.set_defaults(func=dumpfile)

    p_export = subparsers.add_parser('export', parents=[common, keyed], help='export tables to a file')
    p_export.add_argument('tpsfile', metavar='FILE', help='TPS file')
    p_export.add_argument('outfile', metavar='OUTFILE', help='output filename')
    p_export.add_argument('--table', metavar='TABLE', type=int, help='limit to single table')
    e_fmt = p_export.add_mutually_exclusive_group()
    e_fmt.add_argument('--tsv', action='store_true', help='export to tsv instead of xlsx')
    e_fmt.add_argument('--csv', action='store_true', help='export to csv instead of xlsx')
    p_export.add_argument('--sort', action='store_true', help='order records by record number')
    p_export.add_argument('--separator', metavar='C', help='field separator for tsv/csv')
    p_export.add_argument('--quote', metavar='C', default='"', help='quote character for tsv/csv')
    p_export.set_defaults(func=export)

    p_decrypt = subparsers.add_parser('decrypt', parents=[common, keyed], help='write a decrypted copy')
    p_decrypt.add_argument('tpsfile', metavar='FILE', help='encrypted TPS file')
    p_decrypt.add_argument('outfile', metavar='OUTFILE', help='output filename')
    p_decrypt.set_defaults(func=decrypt)

    p_recover = subparsers.add_parser('recover', parents=[common], help='recover the key of an encrypted file')
    p_recover.add_argument('tpsfile', metavar='FILE', help='encrypted TPS file')
    p_recover.add_argument('--keyfile', metavar='KEYFILE', help='write the recovered key to KEYFILE')
    p_recover.add_argument('--checkpoint', metavar='FILE', help='checkpoint file to save and resume progress')
    p_recover.add_argument('--workers', metavar='N', type=int, default=1, help='number of scanning threads')
    p_recover.add_argument('--partitions', metavar='N', type=int, default=16,
                         help='number of partitions of the key word space')
    p_recover.set_defaults(func=recover)

    p_analyze = subparsers.add_parser('analyze', parents=[common, keyed], help='show the swap structure of a key')
    p_analyze.set_defaults(func=analyze)

    return parser


def _setup_logging(args):
    level = _logging.WARNING
    if args.quiet is True:
        level = _logging.ERROR
    elif args.verbose == 1:
        level = _logging.INFO
    elif args.verbose > 1:
        level = _logging.DEBUG
    _logging.basicConfig(level=level, format='%(levelname)s %(name)s: %(message)s')


def main(argv=None):
    ''' entry point '''

    parser = _parser()
    args = parser.parse_args(argv)

    if args.version is True:
        version()
    if not hasattr(args, 'func'):
        parser.print_help()
        _sys.exit()

    _setup_logging(args)
    try:
        args.func(args)
    except _exceptions.UserFeedbackException as e:
        print(e, file=_sys.stderr)
        _sys.exit(1)
    except _exceptions.NotATpsFileException as e:
        print('not a TPS file: %s' % (e,), file=_sys.stderr)
        _sys.exit(1)
    _sys.exit()


def _outfile(name):
    filename = _path.abspath(_path.expanduser(name))
    if _path.exists(filename):
        raise _exceptions.UserFeedbackException('refusing to overwrite output file %s' % (name,))
    return filename


def _key(args):
    ''' returns the Key given by --keyfile, or None '''

    if getattr(args, 'keyfile', None) is None:
        return None
    with open(args.keyfile, 'rb') as f:
        data = f.read()
    if len(data) != _KEYSIZE:
        raise _exceptions.UserFeedbackException('key file %s should contain %d bytes, not %d'
                                                % (args.keyfile, _KEYSIZE, len(data)))
    return _Key.from_bytes(data)


def _open(args):
    return TpsFile(args.tpsfile, password=args.password, key=_key(args),
                   encoding=args.encoding, ignore_errors=args.ignore_errors)


def fileinfo(args):
    ''' print information on the file '''

    tps = _open(args)
    _sys.stdout.write(_export.describe_header(tps))

    if args.tables is True:
        _sys.stdout.write(_export.describe_tables(tps, _path.basename(args.tpsfile)))

    if args.indexes is True:
        _sys.stdout.write(_export.describe_indexes(tps))

    if args.blocks is True:
        for blck in tps.blocks():
            _sys.stdout.write('%r\n' % (blck,))
            for page in blck.pages():
                _sys.stdout.write('  %r\n' % (page,))

    if args.layout is True:
        _export.describe_layout(tps, _sys.stdout)


def dumpfile(args):
    ''' Dump the data of the file to stdout. '''

    tps = _open(args)
    tables = None if args.table is None else [args.table]
    _export.dumpfile(tps, _sys.stdout, tables)


def export(args):
    ''' export the tables of the file to the target file(s) '''

    outfile = _outfile(args.outfile)
    fmt = 'xlsx'
    if args.tsv is True:
        fmt = 'tsv'
    elif args.csv is True:
        fmt = 'csv'

    tps = _open(args)
    tables = None if args.table is None else [args.table]
    counts = _export.export_file(tps, outfile, fmt, tables, args.sort, args.separator, args.quote)
    for table, count in counts.items():
        print('table %d: %d records' % (table, count))
    if tps.duplicates:
        print('%d duplicate record(s) skipped' % (len(tps.duplicates),))


def decrypt(args):
    ''' write a decrypted copy of the file '''

    if args.password is None and args.keyfile is None:
        raise _exceptions.UserFeedbackException('decrypt needs --password or --keyfile')
    outfile = _outfile(args.outfile)
    try:
        tps = _open(args)
    except _exceptions.NotATpsFileException:
        raise _exceptions.UserFeedbackException('decryption failed, wrong password or key')
    with open(outfile, 'wb') as f:
        f.write(tps.data())


def recover(args):
    ''' recover the key of an encrypted file '''

    keyfile = None if args.keyfile is None else _outfile(args.keyfile)
    with open(args.tpsfile, 'rb') as f:
        data = f.read()

    # the first interrupt stops the run after the current partition
    cancel = _threading.Event()
    def _interrupt(signum, frame):
        print('interrupted, stopping after the current partition', file=_sys.stderr)
        cancel.set()
        _signal.signal(_signal.SIGINT, _signal.default_int_handler)
    previous = _signal.signal(_signal.SIGINT, _interrupt)

    try:
        keys = _recovery.recover_key(data, checkpoint=args.checkpoint, workers=args.workers,
                                     partitions=args.partitions, cancel=cancel)
    except _exceptions.CancelledException:
        if args.checkpoint is not None:
            raise _exceptions.UserFeedbackException('cancelled, resume with --checkpoint %s'
                                                    % (args.checkpoint,))
        raise _exceptions.UserFeedbackException('cancelled')
    finally:
        _signal.signal(_signal.SIGINT, previous)

    if not keys:
        raise _exceptions.UserFeedbackException('no key found')
    for key in keys:
        print(key.to_bytes().hex())
    if keyfile is not None:
        if len(keys) > 1:
            _log.warning('%d keys found, writing the first', len(keys))
        with open(keyfile, 'wb') as f:
            f.write(keys[0].to_bytes())


def analyze(args):
    ''' print the swap matrix and swap groups of a key '''

    if args.password is not None:
        key = _Key(args.password)
    elif args.keyfile is not None:
        key = _key(args)
    else:
        raise _exceptions.UserFeedbackException('analyze needs --password or --keyfile')

    print(_render_swap_matrix(key))
    for group in _swap_groups(key):
        print('group: %s' % (', '.join('%d' % c for c in group),))
    if _is_single_pass_recoverable(key):
        print('key is recoverable in a single pass')
    else:
        print('key is not recoverable in a single pass')


def version():
    ''' return the version of xtps '''

    _modulepath = _path.abspath(__file__)
    _moduledir = _path.split(_modulepath)[0]
    _versionfile = _path.join(_moduledir, 'VERSION')
    with open(_versionfile, 'rt') as f:
        version = f.readline()
        print(version.strip())
    _sys.exit()


if __name__ == "__main__":
    main()
