''' _cipher.py - the block cipher used to obfuscate encrypted TPS files

Copyright (c) 2022 Netherlands Forensic Institute - MIT License

An encrypted TPS file is transformed in independent blocks of 64 bytes, each
block viewed as sixteen little-endian 32-bit words. The 64 byte key is derived
from the owner password (CP-1258 encoded) by smearing the password over 64
bytes and shuffling the resulting words twice.

A single round t of the forward transform takes key word k = key[t] and swaps
bits between data words t and j = k & 0x0f, selected by the bits of k, after
which k is added to both words. The inverse transform runs the rounds in
reverse order.
'''

from collections import namedtuple as _nt
from enum import Enum as _Enum
from bitstring import ConstBitStream as _CB
from bitstring import pack as _pack
import numpy as _np

from . import _exceptions


BLOCKSIZE = 64
KEYSIZE = 64
PASSWORD_ENCODING = 'cp1258'

_WORDS = ', '.join(['uintle:32'] * 16)


##################
# key derivation #
##################

def derive_block(password):
    ''' smear the password over a 64 byte block, returns the block as bytes '''

    if isinstance(password, str):
        password = password.encode(PASSWORD_ENCODING)
    keybytes = bytes(password) + b'\x00'

    block = bytearray(KEYSIZE)
    for t in range(KEYSIZE):
        block[(t * 0x11) & 0x3f] = (t + keybytes[(t + 1) % len(keybytes)]) & 0xff
    return bytes(block)


def shuffle(words):
    ''' a single shuffle pass over the sixteen key words, returns new list '''

    words = list(words)
    for t in range(16):
        a = words[t]
        j = a & 0x0f
        b = words[j]
        words[j] = (a + (a & b)) & 0xffffffff
        words[t] = (a + (a | b)) & 0xffffffff
    return words


class Key():
    ''' an initialized 64 byte key '''

    def __init__(s, password=None, words=None):
        ''' derive the key from the given password, or use the given (initialized) words '''

        if password is None and words is None:
            raise _exceptions.InvalidArgumentException('need password or key words')

        if words is None:
            words = _CB(bytes=derive_block(password)).readlist(_WORDS)
            words = shuffle(shuffle(words))

        if len(words) != 16:
            raise _exceptions.InvalidArgumentException('a key consists of 16 words')
        s.words = [w & 0xffffffff for w in words]


    @classmethod
    def from_words(cls, words):
        return cls(words=words)


    @classmethod
    def from_bytes(cls, data):
        ''' create key from the 64 bytes of an initialized key '''

        if len(data) != KEYSIZE:
            raise _exceptions.InvalidArgumentException('key should be 64 bytes')
        return cls(words=_CB(bytes=bytes(data)).readlist(_WORDS))


    def __eq__(s, other):
        if isinstance(other, Key):
            return s.words == other.words
        return NotImplemented


    def __hash__(s):
        return hash(tuple(s.words))


    def __repr__(s):
        return 'Key(%s)' % (' '.join('%08x' % w for w in s.words),)


    def to_bytes(s):
        return _pack(_WORDS, *s.words).bytes


    ##########################
    # single block transform #
    ##########################

    def encrypt_words(s, data):
        ''' forward transform of a list of sixteen words, returns new list '''

        data = list(data)
        for t in range(16):
            k = s.words[t]
            j = k & 0x0f
            x = data[t]
            y = data[j]
            data[t] = (k + ((k & x) | (~k & y))) & 0xffffffff
            data[j] = (k + ((k & y) | (~k & x))) & 0xffffffff
        return data


    def decrypt_words(s, data):
        ''' inverse transform of a list of sixteen words, returns new list '''

        data = list(data)
        for t in range(15, -1, -1):
            k = s.words[t]
            j = k & 0x0f
            x = (data[t] - k) & 0xffffffff
            y = (data[j] - k) & 0xffffffff
            data[t] = ((k & x) | (~k & y)) & 0xffffffff
            data[j] = ((k & y) | (~k & x)) & 0xffffffff
        return data


    def encrypt_block(s, block):
        ''' encrypt 64 bytes, returns bytes '''

        words = _CB(bytes=bytes(block)).readlist(_WORDS)
        return _pack(_WORDS, *s.encrypt_words(words)).bytes


    def decrypt_block(s, block):
        ''' decrypt 64 bytes, returns bytes '''

        words = _CB(bytes=bytes(block)).readlist(_WORDS)
        return _pack(_WORDS, *s.decrypt_words(words)).bytes


    ##################
    # bulk transform #
    ##################

    def _blocks(s, data, offset, length):
        ''' return the given region of data as an (n, 16) array of words '''

        if not isinstance(data, bytearray):
            raise _exceptions.InvalidArgumentException('data must be a bytearray')
        if offset % BLOCKSIZE != 0:
            raise _exceptions.InvalidArgumentException('offset must be a multiple of 64')
        if length % BLOCKSIZE != 0:
            raise _exceptions.InvalidArgumentException('length must be a multiple of 64')
        if offset + length > len(data):
            raise _exceptions.OutOfRangeException('region [%x, %x) outside of data' % (offset, offset + length))

        words = _np.frombuffer(bytes(data[offset:offset + length]), dtype='<u4')
        return words.astype(_np.uint32).reshape(-1, 16)


    def encrypt(s, data, offset=0, length=None):
        ''' encrypt the region [offset, offset+length) of the bytearray in place '''

        if length is None:
            length = len(data) - offset
        arr = s._blocks(data, offset, length)
        for t in range(16):
            k = _np.uint32(s.words[t])
            j = s.words[t] & 0x0f
            x = arr[:, t].copy()
            y = arr[:, j].copy()
            arr[:, t] = k + ((k & x) | (~k & y))
            arr[:, j] = k + ((k & y) | (~k & x))
        data[offset:offset + length] = arr.astype('<u4').tobytes()
        return data


    def decrypt(s, data, offset=0, length=None):
        ''' decrypt the region [offset, offset+length) of the bytearray in place '''

        if length is None:
            length = len(data) - offset
        arr = s._blocks(data, offset, length)
        for t in range(15, -1, -1):
            k = _np.uint32(s.words[t])
            j = s.words[t] & 0x0f
            x = arr[:, t] - k
            y = arr[:, j] - k
            arr[:, t] = (k & x) | (~k & y)
            arr[:, j] = (k & y) | (~k & x)
        data[offset:offset + length] = arr.astype('<u4').tobytes()
        return data


################
# key analysis #
################

# A key word at index t swaps data between words t and key[t] & 0x0f. These
# swaps create dependencies between the key words, which determine in which
# order the words of a key can be recovered.

class Direction(_Enum):
    ''' direction of a dependency in the swap matrix '''

    HOR = 0
    VERT = 1


_dependency = _nt('dependency', 'direction column linked')


def _as_words(key):
    if isinstance(key, Key):
        return key.words
    return list(key)


def dependencies(key):
    ''' returns for each key word a list of dependency objects

    A dependency object contains the following fields:

        - direction: HOR for the word that swaps, VERT for its swap target
        - column: the word depended upon
        - linked: the word that owns the dependency
    '''

    words = _as_words(key)
    depends = [[] for _ in range(16)]
    for t in range(16):
        j = words[t] & 0x0f
        if t != j:
            depends[t].append(_dependency(Direction.HOR, j, t))
            depends[j].append(_dependency(Direction.VERT, t, j))

    # highest column first, horizontal before vertical
    for deps in depends:
        deps.sort(key=lambda d: (-d.column, d.direction.value))
    return depends


def _collect(depends, column, group):
    if column in group:
        return
    group.append(column)
    for d in depends[column]:
        _collect(depends, d.column, group)


def swap_groups(key):
    ''' returns the groups of key word indexes that depend on each other '''

    depends = dependencies(key)
    done = set()
    groups = []
    for t in range(16):
        if t in done:
            continue
        group = [t]
        for d in depends[t]:
            _collect(depends, d.column, group)
        done.update(group)
        groups.append(group)
    return groups


def is_single_pass_recoverable(key):
    ''' True when no key word swaps with a word of a higher index

    Such keys can be recovered in a single pass, one word at a time, from
    index 15 down to 0. '''

    for deps in dependencies(key):
        for d in deps:
            if d.direction is Direction.HOR and d.linked < d.column:
                return False
    return True


def render_swap_matrix(key):
    ''' render the swap matrix of a key as text

    Each line shows for key word t an 'x' at its own index, a '+' at the
    index it swaps with and a '*' when it swaps with itself. '''

    words = _as_words(key)
    lines = ['  ' + ''.join('%x ' % t for t in range(16))]
    for t in range(15, -1, -1):
        j = words[t] & 0x0f
        row = []
        for c in range(16):
            if c == t and c == j:
                row.append('* ')
            elif c == t:
                row.append('x ')
            elif c == j:
                row.append('+ ')
            else:
                row.append('. ')
        lines.append('%x %s' % (t, ''.join(row)))
    return '\n'.join(lines) + '\n'
