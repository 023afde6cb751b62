''' _recovery.py - ciphertext-only recovery of the key of an encrypted TPS file

Copyright (c) 2022 Netherlands Forensic Institute - MIT License

The cipher transforms blocks of sixteen 32-bit words independently. Each key
word k = key[t] takes part in a single round that only touches words t and
k & 0x0f. This makes it feasible to recover the key one word at a time, from
index 15 down to 0, by brute forcing the 2^32 candidate values of a single
word against known plaintext:

    - The block at file offset 0x1c0 holds the end of the page index of the
      header. All sixteen words of its plaintext equal the number of 256 byte
      pages after the header, which can be derived from the file size.
    - Unused space in a TPS file is filled with 0xb0 bytes. Since blocks are
      encrypted independently, a ciphertext block that occurs more than once
      most likely decrypts to sixteen words 0xb0b0b0b0.
    - Files contain blocks holding the byte sequence 0..63 (shifted by a
      multiple of 64), of which each word consists of four ascending bytes.

Each scan typically leaves a few thousand candidates for a key word. The
candidates are then reduced by checking the identical blocks and the
sequence blocks against the partially decrypted word.

The scans are vectorised with numpy. Candidate ranges can be split into
partitions that are scanned by a pool of threads.
'''

from collections import OrderedDict as _OD
from concurrent.futures import ThreadPoolExecutor as _ThreadPoolExecutor
from functools import cmp_to_key as _cmp_to_key
from bitstring import ConstBitStream as _CB
from bitstring import BitStream as _BS
from bitstring import pack as _pack
import numpy as _np
import os as _os
import os.path as _path
import logging as _logging

from . import _exceptions
from ._cipher import Key as _Key
from ._cipher import BLOCKSIZE as _BLOCKSIZE

_log = _logging.getLogger(__name__)


HEADER_INDEX_END_OFFSET = 0x1c0
B0B0 = 0xb0b0b0b0
CHECKPOINT_MAGIC = b'XTPSRS01'

_M32 = 0xffffffff


def _int32(value):
    ''' interpret value as a signed 32-bit integer '''

    value &= _M32
    if value & 0x80000000:
        return value - 0x100000000
    return value


def _compare(a, b):
    ''' compare two 32-bit words as the difference of two signed 32-bit integers

    The difference wraps around, so this is not a total order on all words.
    It does give the same ordering of candidates as the original tooling. '''

    return _int32(_int32(a) - _int32(b))


#########
# block #
#########

class Block():
    ''' an offset, sixteen 32-bit words and a flag that marks the block encrypted '''

    def __init__(s, offset, values, encrypted):
        if len(values) != 16:
            raise _exceptions.InvalidArgumentException('a block consists of 16 words')
        s.offset = offset
        s.values = tuple(v & _M32 for v in values)
        s.encrypted = bool(encrypted)


    @classmethod
    def from_bytes(cls, data, offset=0, encrypted=True):
        ''' create a block from 64 bytes (sixteen little-endian words) '''

        if len(data) != _BLOCKSIZE:
            raise _exceptions.InvalidArgumentException('a block is 64 bytes')
        values = _CB(bytes=bytes(data)).readlist(', '.join(['uintle:32'] * 16))
        return cls(offset, values, encrypted)


    def moved(s, offset):
        ''' returns a copy of this block at the given offset '''

        return Block(offset, s.values, s.encrypted)


    def apply(s, a, b, va, vb):
        ''' returns a copy with word a set to va and word b set to vb '''

        values = list(s.values)
        values[a] = va
        values[b] = vb
        return Block(s.offset, values, s.encrypted)


    def same_value(s, other):
        return s.values == other.values


    def __eq__(s, other):
        if isinstance(other, Block):
            return (s.offset == other.offset and s.encrypted == other.encrypted
                    and s.values == other.values)
        return NotImplemented


    def __hash__(s):
        return hash((s.offset, s.encrypted, s.values))


    def compare(s, other):
        ''' returns a negative number, zero or a positive number '''

        d = _compare(s.offset, other.offset)
        if d == 0:
            d = int(s.encrypted) - int(other.encrypted)
            if d == 0:
                for a, b in zip(s.values, other.values):
                    d = _compare(a, b)
                    if d != 0:
                        return d
        return d


    def __lt__(s, other):
        return s.compare(other) < 0


    def __repr__(s):
        return 'Block(%x, %s, %s)' % (s.offset, 'encrypted' if s.encrypted else 'plain',
                                      ' '.join('%08x' % v for v in s.values))


    def to_bitstream(s):
        ''' serialize as offset, encrypted flag, word count and the words (big-endian) '''

        btstr = _pack('intbe:32, uint:8, uintbe:32', _int32(s.offset), int(s.encrypted), len(s.values))
        btstr += _pack(', '.join(['uintbe:32'] * len(s.values)), *s.values)
        return btstr


    @classmethod
    def read(cls, btstr):
        ''' read a serialized block from the current position of the bitstream '''

        offset, encrypted, count = btstr.readlist('intbe:32, uint:8, uintbe:32')
        values = btstr.readlist(['uintbe:32'] * count)
        return cls(offset, values, encrypted != 0)


###################
# block utilities #
###################

def load_blocks(data, encrypted=True):
    ''' split the given bytes into a list of 64 byte blocks

    Trailing bytes that do not fill a complete block are ignored. '''

    count = len(data) // _BLOCKSIZE
    return [Block.from_bytes(data[t * _BLOCKSIZE:(t + 1) * _BLOCKSIZE], t * _BLOCKSIZE, encrypted)
            for t in range(count)]


def find_identical_blocks(blocks):
    ''' returns an ordered dictionary mapping a block to the list of later
    blocks with the same value

    Only blocks that have at least one duplicate are present as key. The
    keys are ordered by Block.compare. '''

    same = {}
    done = set()
    for t, a in enumerate(blocks):
        if a in done:
            continue
        done.add(a)
        for b in blocks[t:]:
            if b in done or not a.same_value(b):
                continue
            same.setdefault(a, []).append(b)
            done.add(b)

    ordered = sorted(same, key=_cmp_to_key(lambda a, b: a.compare(b)))
    return _OD((a, same[a]) for a in ordered)


def header_index_end_block(blocks, encrypted):
    ''' returns the block at offset 0x1c0, encrypted or as (derived) plaintext

    All words of the plaintext block equal the number of 256 byte pages
    after the 512 byte header, based on the offset of the last block. '''

    if encrypted:
        idx = HEADER_INDEX_END_OFFSET // _BLOCKSIZE
        if len(blocks) <= idx or blocks[idx].offset != HEADER_INDEX_END_OFFSET:
            raise _exceptions.InvalidArgumentException('no block at offset %x' % (HEADER_INDEX_END_OFFSET,))
        return blocks[idx]

    value = ((blocks[-1].offset + 0x100 - 0x200) & _M32) >> 8
    return Block(HEADER_INDEX_END_OFFSET, [value] * 16, False)


def is_b0b0_part(value):
    return value & _M32 == B0B0


def is_sequence_part(value):
    ''' True when the little-endian bytes of value ascend by one, starting at a multiple of 4 '''

    b0 = value & 0xff
    if b0 & 0x03 != 0:
        return False
    for t in range(1, 4):
        if (value >> (8 * t)) & 0xff != (b0 + t) & 0xff:
            return False
    return True


def generate_sequence_block(last):
    ''' returns the sequence block of which the last word is given '''

    values = []
    for i in range(16):
        delta = 4 * (15 - i)
        values.append(sum((((last >> (8 * b)) - delta) & 0xff) << (8 * b) for b in range(4)))
    return Block(0, values, False)


###############
# partial key #
###############

class PartialKey():
    ''' sixteen key words, each of which is either known (valid) or not '''

    def __init__(s, key=None, valid=None):
        s.key = tuple(k & _M32 for k in key) if key is not None else (0,) * 16
        s.valid = tuple(bool(v) for v in valid) if valid is not None else (False,) * 16


    def apply(s, idx, value):
        ''' returns a new PartialKey with word idx set to value '''

        key = list(s.key)
        valid = list(s.valid)
        key[idx] = value & _M32
        valid[idx] = True
        return PartialKey(key, valid)


    def key_part(s, idx):
        if not s.valid[idx]:
            raise _exceptions.InvalidArgumentException('key part invalid at index %d' % (idx,))
        return s.key[idx]


    def partial_decrypt(s, idx, block):
        ''' apply the inverse round of word idx to the block, returns a new block '''

        k = s.key_part(idx)
        j = k & 0x0f
        x = (block.values[idx] - k) & _M32
        y = (block.values[j] - k) & _M32
        return block.apply(idx, j, (x & k) | (y & ~k & _M32), (y & k) | (x & ~k & _M32))


    def is_complete(s):
        return all(s.valid)


    def invalid_indexes(s):
        ''' returns the indexes of the unknown words, highest first '''

        return [t for t in range(15, -1, -1) if not s.valid[t]]


    def merge(s, other):
        ''' combine the known words of two partial keys

        Raises InvalidArgumentException when both know a word but disagree.
        The last word is never merged. '''

        key = [0] * 16
        valid = [False] * 16
        for t in range(15):
            if s.valid[t] and other.valid[t] and s.key[t] != other.key[t]:
                raise _exceptions.InvalidArgumentException('partial keys disagree on index %d' % (t,))
            if s.valid[t]:
                key[t], valid[t] = s.key[t], True
            elif other.valid[t]:
                key[t], valid[t] = other.key[t], True
        return PartialKey(key, valid)


    def to_key(s):
        if not s.is_complete():
            raise _exceptions.IncompleteException('incomplete partial key %r' % (s,))
        return _Key.from_words(s.key)


    def compare(s, other):
        ''' per word: first the (signed) key word, then the valid flag '''

        for t in range(16):
            d = _compare(s.key[t], other.key[t])
            if d != 0:
                return d
            d = int(s.valid[t]) - int(other.valid[t])
            if d != 0:
                return d
        return 0


    def __lt__(s, other):
        return s.compare(other) < 0


    def __eq__(s, other):
        if isinstance(other, PartialKey):
            return s.key == other.key and s.valid == other.valid
        return NotImplemented


    def __hash__(s):
        return hash((s.key, s.valid))


    def __repr__(s):
        return ' '.join('%08x' % k if v else '????????' for k, v in zip(s.key, s.valid))


    def to_bitstream(s):
        btstr = _pack('uintbe:32', 16)
        for k, v in zip(s.key, s.valid):
            btstr += _pack('uint:8, uintbe:32', int(v), k)
        return btstr


    @classmethod
    def read(cls, btstr):
        count = btstr.read('uintbe:32')
        key = []
        valid = []
        for _ in range(count):
            v, k = btstr.readlist('uint:8, uintbe:32')
            valid.append(v != 0)
            key.append(k)
        return cls(key, valid)


#########
# scans #
#########

FULL_RANGE = (0, 1 << 32)


class Scanner():
    ''' brute force scans over the candidate values of a single key word

    Each candidate range is split into a number of partitions, which are
    scanned by a pool of worker threads in chunks of chunksize candidates.
    The cancel object (anything with an is_set() method, like a
    threading.Event) is checked between chunks. The optional candidates
    argument is a callable that returns a list of (start, stop) ranges
    for a given key index.
    '''

    def __init__(s, workers=1, partitions=16, chunksize=1 << 22, cancel=None, candidates=None):
        if workers < 1 or partitions < 1 or chunksize < 1:
            raise _exceptions.InvalidArgumentException('workers, partitions and chunksize must be positive')
        s.workers = workers
        s.partitions = partitions
        s.chunksize = chunksize
        s.cancel = cancel
        s.candidates = candidates


    def check_cancel(s):
        if s.cancel is not None and s.cancel.is_set():
            raise _exceptions.CancelledException('key recovery cancelled')


    def _ranges(s, idx):
        ranges = s.candidates(idx) if s.candidates is not None else [FULL_RANGE]
        parts = []
        for start, stop in ranges:
            start = max(0, start)
            stop = min(1 << 32, stop)
            if stop <= start:
                continue
            step = -(-(stop - start) // s.partitions)
            for lo in range(start, stop, step):
                parts.append((lo, min(lo + step, stop)))
        return parts


    def _scan_partition(s, match, lo, hi):
        hits = []
        for start in range(lo, hi, s.chunksize):
            s.check_cancel()
            k = _np.arange(start, min(start + s.chunksize, hi), dtype=_np.int64).astype(_np.uint32)
            hits.append(k[match(k)])
        if len(hits) == 0:
            return []
        return [int(v) for v in _np.concatenate(hits)]


    def scan(s, idx, match):
        ''' returns the sorted list of candidate words for which match is True

        The match argument is a function that takes an array of candidate
        words and returns an array of booleans. '''

        parts = s._ranges(idx)
        if s.workers == 1 or len(parts) == 1:
            results = [s._scan_partition(match, lo, hi) for lo, hi in parts]
        else:
            with _ThreadPoolExecutor(max_workers=s.workers) as pool:
                futures = [pool.submit(s._scan_partition, match, lo, hi) for lo, hi in parts]
                results = [f.result() for f in futures]
        s.check_cancel()
        return sorted(set(v for r in results for v in r))


_default_scanner = Scanner()


def _words(block):
    return _np.array(block.values, dtype=_np.uint32)


def reverse_key_index_scan(pkey, idx, encrypted, plaintext, scanner=None, self_only=False):
    ''' find the words for key index idx of which the inverse round maps the
    encrypted block onto the plaintext word at idx

    Returns a list of (PartialKey, Block) tuples, in which the block is the
    encrypted block after applying the inverse round. With self_only, only
    words that swap with themselves (k & 0x0f == idx) are considered.
    '''

    scanner = scanner or _default_scanner
    enc = _words(encrypted)
    plain = _np.uint32(plaintext.values[idx])

    def match(k):
        j = (k & 0x0f).astype(_np.intp)
        x = enc[idx] - k
        y = enc[j] - k
        found = ((x & k) | (y & ~k)) == plain
        if self_only:
            found &= j == idx
        return found

    results = []
    for word in scanner.scan(idx, match):
        newkey = pkey.apply(idx, word)
        results.append((newkey, newkey.partial_decrypt(idx, encrypted)))
    return _sorted_results(results)


def forward_key_index_scan(pkey, idx, encrypted, plaintext, scanner=None):
    ''' find the words for key index idx of which the forward round maps the
    plaintext block onto the encrypted word at idx

    Only words that swap with a higher index are considered. Returns a list of
    (PartialKey, Block) tuples, in which the block is the plaintext block
    after applying the forward round.
    '''

    scanner = scanner or _default_scanner
    plain = _words(plaintext)
    crypt = _np.uint32(encrypted.values[idx])

    def match(k):
        j = (k & 0x0f).astype(_np.intp)
        summed = k + ((k & plain[idx]) | (~k & plain[j]))
        return (j > idx) & (summed == crypt)

    results = []
    for word in scanner.scan(idx, match):
        j = word & 0x0f
        x = plaintext.values[idx]
        y = plaintext.values[j]
        sum1 = (word + ((word & x) | (~word & y & _M32))) & _M32
        sum2 = (word + ((word & y) | (~word & x & _M32))) & _M32
        results.append((pkey.apply(idx, word), plaintext.apply(idx, j, sum1, sum2)))
    return _sorted_results(results)


def key_index_self_scan(pkey, idx, encrypted, plaintext, scanner=None):
    ''' the reverse scan restricted to words that swap with themselves '''

    return reverse_key_index_scan(pkey, idx, encrypted, plaintext, scanner, self_only=True)


def _sorted_results(results):
    return sorted(results, key=_cmp_to_key(lambda a, b: a[0].compare(b[0])))


##################
# recovery state #
##################

class RecoveryState():
    ''' a partial key with the header blocks transformed by its known words and
    the identical (b0b0) and sequence blocks that are consistent with it '''

    def __init__(s, key, encrypted, plaintext, original_encrypted=None, original_plaintext=None,
                 b0b0_blocks=(), sequential_blocks=(), parent=None):
        s.key = key
        s.encrypted = encrypted
        s.plaintext = plaintext
        s.original_encrypted = original_encrypted if original_encrypted is not None else encrypted
        s.original_plaintext = original_plaintext if original_plaintext is not None else plaintext
        s.b0b0_blocks = list(b0b0_blocks)
        s.sequential_blocks = list(sequential_blocks)
        s.parent = parent


    @classmethod
    def start(cls, encrypted, plaintext):
        return cls(PartialKey(), encrypted, plaintext)


    def _child(s, key=None, block=None, forward=False, b0b0_blocks=None, sequential_blocks=None):
        encrypted, plaintext = s.encrypted, s.plaintext
        if block is not None:
            if forward:
                plaintext = block
            else:
                encrypted = block
        return RecoveryState(key if key is not None else s.key, encrypted, plaintext,
                             s.original_encrypted, s.original_plaintext,
                             b0b0_blocks if b0b0_blocks is not None else s.b0b0_blocks,
                             sequential_blocks if sequential_blocks is not None else s.sequential_blocks,
                             s)


    #########
    # scans #
    #########

    def reverse_index_scan(s, idx, scanner=None):
        return [s._child(k, b, forward=False)
                for k, b in reverse_key_index_scan(s.key, idx, s.encrypted, s.plaintext, scanner)]


    def forward_index_scan(s, idx, scanner=None):
        return [s._child(k, b, forward=True)
                for k, b in forward_key_index_scan(s.key, idx, s.encrypted, s.plaintext, scanner)]


    def index_self_scan(s, idx, scanner=None):
        return [s._child(k, b, forward=False)
                for k, b in key_index_self_scan(s.key, idx, s.encrypted, s.plaintext, scanner)]


    def index_scan(s, idx, scanner=None):
        ''' the reverse scan, combined with the forward scan below index 15

        Self swapping words (k & 0x0f == idx) are a subset of what the reverse
        scan finds, so index_self_scan is not repeated here. '''

        found = s.reverse_index_scan(idx, scanner)
        if idx < 15:
            found += s.forward_index_scan(idx, scanner)
        return unique_sorted(found)


    ##############
    # reductions #
    ##############

    @staticmethod
    def reduce_first(candidates, idx, blocks):
        ''' keep the candidates that decrypt at least one identical block to
        0xb0b0b0b0 and at least one block to a sequence at idx '''

        return RecoveryState.reduce_first_sequential(
            RecoveryState.reduce_first_b0b0(candidates, idx, blocks), idx, blocks)


    @staticmethod
    def reduce_next(candidates, idx):
        ''' revalidate the stored identical and sequence blocks at idx '''

        return RecoveryState.reduce_next_sequential(
            RecoveryState.reduce_next_b0b0(candidates, idx), idx)


    @staticmethod
    def _reduce(candidates, idx, blocks_of, predicate, attribute):
        results = []
        for state in candidates:
            kept = []
            for block in blocks_of(state):
                decrypted = state.key.partial_decrypt(idx, block)
                if predicate(decrypted.values[idx]):
                    kept.append(decrypted)
            if kept:
                results.append(state._child(**{attribute: kept}))
        return _sort_states(results)


    @staticmethod
    def reduce_first_b0b0(candidates, idx, blocks):
        same = list(find_identical_blocks(blocks).keys())
        return RecoveryState._reduce(candidates, idx, lambda st: same, is_b0b0_part, 'b0b0_blocks')


    @staticmethod
    def reduce_next_b0b0(candidates, idx):
        return RecoveryState._reduce(unique_sorted(candidates), idx, lambda st: st.b0b0_blocks,
                                     is_b0b0_part, 'b0b0_blocks')


    @staticmethod
    def reduce_first_sequential(candidates, idx, blocks):
        return RecoveryState._reduce(unique_sorted(candidates), idx, lambda st: blocks,
                                     is_sequence_part, 'sequential_blocks')


    @staticmethod
    def reduce_next_sequential(candidates, idx):
        return RecoveryState._reduce(unique_sorted(candidates), idx, lambda st: st.sequential_blocks,
                                     is_sequence_part, 'sequential_blocks')


    ##############
    # comparison #
    ##############

    def compare(s, other):
        ''' most b0b0 blocks first, then most sequence blocks, then by key '''

        d = len(other.b0b0_blocks) - len(s.b0b0_blocks)
        if d == 0:
            d = len(other.sequential_blocks) - len(s.sequential_blocks)
            if d == 0:
                d = s.key.compare(other.key)
        return d


    def __lt__(s, other):
        return s.compare(other) < 0


    def _identity(s):
        return (s.key, len(s.b0b0_blocks), len(s.sequential_blocks))


    def __eq__(s, other):
        if isinstance(other, RecoveryState):
            return s._identity() == other._identity()
        return NotImplemented


    def __hash__(s):
        return hash(s._identity())


    def __repr__(s):
        return 'RecoveryState(%d,%d,%r)' % (len(s.b0b0_blocks), len(s.sequential_blocks), s.key)


    def is_complete(s):
        return s.key.is_complete()


    def to_key(s):
        return s.key.to_key()


    #################
    # serialization #
    #################

    def to_bitstream(s):
        ''' serialize the partial key, the two current header blocks and both block lists '''

        btstr = _BS()
        btstr += s.key.to_bitstream()
        btstr += s.encrypted.to_bitstream()
        btstr += s.plaintext.to_bitstream()
        for blocks in (s.b0b0_blocks, s.sequential_blocks):
            btstr += _pack('uintbe:32', len(blocks))
            for block in blocks:
                btstr += block.to_bitstream()
        return btstr


    def to_bytes(s):
        return s.to_bitstream().bytes


    @classmethod
    def read(cls, btstr):
        ''' read a serialized state from the current position of the bitstream

        The original header blocks are not serialized; they are set to the
        current header blocks. '''

        key = PartialKey.read(btstr)
        encrypted = Block.read(btstr)
        plaintext = Block.read(btstr)
        lists = []
        for _ in range(2):
            count = btstr.read('uintbe:32')
            lists.append([Block.read(btstr) for _ in range(count)])
        return cls(key, encrypted, plaintext, b0b0_blocks=lists[0], sequential_blocks=lists[1])


    @classmethod
    def from_bytes(cls, data):
        return cls.read(_CB(bytes=bytes(data)))


def _sort_states(states):
    return sorted(states, key=_cmp_to_key(lambda a, b: a.compare(b)))


def unique_sorted(states):
    ''' remove states with the same key and block counts (first wins) and sort '''

    unique = _OD()
    for state in states:
        unique.setdefault(state, state)
    return _sort_states(unique.values())


###############
# checkpoints #
###############

def write_checkpoint(filename, next_index, states):
    ''' write the states to filename, via a temporary file that is renamed '''

    btstr = _BS(bytes=CHECKPOINT_MAGIC)
    btstr += _pack('intbe:32, uintbe:32', next_index, len(states))
    for state in states:
        btstr += state.to_bitstream()

    tmpname = filename + '.tmp'
    with open(tmpname, 'wb') as f:
        f.write(btstr.bytes)
        f.flush()
        _os.fsync(f.fileno())
    _os.replace(tmpname, filename)
    _log.debug('checkpoint with %d states before index %d written to %s', len(states), next_index, filename)


def read_checkpoint(filename, encrypted=None, plaintext=None):
    ''' returns (next index, states) from the checkpoint file

    The original header blocks of the states are set to the given blocks. '''

    with open(filename, 'rb') as f:
        btstr = _CB(bytes=f.read())
    if btstr.read('bytes:%d' % len(CHECKPOINT_MAGIC)) != CHECKPOINT_MAGIC:
        raise _exceptions.UserFeedbackException('%s is not a key recovery checkpoint' % (filename,))
    next_index, count = btstr.readlist('intbe:32, uintbe:32')
    states = []
    for _ in range(count):
        state = RecoveryState.read(btstr)
        if encrypted is not None:
            state.original_encrypted = encrypted
        if plaintext is not None:
            state.original_plaintext = plaintext
        states.append(state)
    return next_index, states


############
# recovery #
############

def verify(key, encrypted, plaintext):
    ''' True if the key decrypts the encrypted block to the plaintext block '''

    return list(key.decrypt_words(encrypted.values)) == list(plaintext.values)


def recover_key(source, checkpoint=None, workers=1, partitions=16, chunksize=1 << 22,
                cancel=None, candidates=None):
    ''' recover the key of an encrypted TPS file, returns a list of verified keys

    The source argument can be the bytes of the encrypted file or a list of
    Block objects. The key words are recovered from index 15 down to 0. After
    each index the surviving states are written to the checkpoint file (when
    given); a run with an existing checkpoint file resumes from it.

    See Scanner for the workers, partitions, chunksize, cancel and
    candidates arguments. A cancelled run raises CancelledException, leaving
    the last checkpoint intact.
    '''

    if isinstance(source, (bytes, bytearray, memoryview)):
        blocks = load_blocks(bytes(source), encrypted=True)
    else:
        blocks = list(source)

    encrypted = header_index_end_block(blocks, True)
    plaintext = header_index_end_block(blocks, False)
    scanner = Scanner(workers, partitions, chunksize, cancel, candidates)

    if checkpoint is not None and _path.exists(checkpoint):
        index, states = read_checkpoint(checkpoint, encrypted, plaintext)
        _log.info('resuming from %s at index %d with %d states', checkpoint, index, len(states))
    else:
        index, states = 15, [RecoveryState.start(encrypted, plaintext)]

    while index >= 0 and states:
        scanner.check_cancel()
        found = []
        for state in states:
            scanner.check_cancel()
            found += state.index_scan(index, scanner)
        found = unique_sorted(found)
        _log.info('index %d: %d candidates', index, len(found))

        if index == 15:
            states = RecoveryState.reduce_first(found, index, blocks)
        else:
            states = RecoveryState.reduce_next(found, index)
        _log.info('index %d: %d states after reduction', index, len(states))

        index -= 1
        if checkpoint is not None:
            write_checkpoint(checkpoint, index, states)

    keys = []
    for state in states:
        if not state.is_complete():
            continue
        key = state.to_key()
        if key in keys:
            continue
        if verify(key, encrypted, plaintext):
            keys.append(key)
        else:
            _log.debug('candidate key %r does not decrypt the header block', key)
    _log.info('recovered %d key(s)', len(keys))
    return keys
