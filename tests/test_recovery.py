''' test_recovery.py - tests for ciphertext-only key recovery

Copyright (c) 2022 Netherlands Forensic Institute - MIT License
'''

import threading

import pytest

from xtps import _recovery
from xtps import _exceptions
from xtps._cipher import Key
from xtps._recovery import Block, PartialKey, RecoveryState

import tpsbuilder


def _block(offset, values, encrypted=True):
    return Block(offset, values, encrypted)


COUNTING = list(range(1, 17))


#########
# block #
#########

def test_block_create():
    ba = _block(0, [0] * 16)
    bb = ba.moved(10)
    bd = ba.apply(0, 1, 1, 2)

    assert (ba.offset, bb.offset, bd.offset) == (0, 10, 0)
    assert ba.encrypted and bb.encrypted and bd.encrypted
    assert ba == _block(0, [0] * 16)
    assert bb != ba
    assert bd != ba
    assert bd.values[:2] == (1, 2)
    assert ba.compare(bd) == -1
    assert bd.compare(ba) == 1
    assert ba < bd


def test_block_bytes():
    data = bytes(range(64))
    block = Block.from_bytes(data, 0x40, encrypted=False)
    assert block.values[0] == 0x03020100
    assert block.values[15] == 0x3f3e3d3c
    with pytest.raises(_exceptions.InvalidArgumentException):
        Block.from_bytes(data[:10])
    with pytest.raises(_exceptions.InvalidArgumentException):
        _block(0, [0] * 15)


def test_block_serialization():
    block = _block(0x1c0, COUNTING, encrypted=False)
    btstr = block.to_bitstream()
    btstr.pos = 0
    assert Block.read(btstr) == block


###################
# block utilities #
###################

def test_load_blocks():
    blocks = _recovery.load_blocks(bytes(200))
    assert [b.offset for b in blocks] == [0, 0x40, 0x80]
    assert all(b.encrypted for b in blocks)


def test_find_no_identical_blocks():
    blocks = [_block(t, [t + 1] + COUNTING[1:]) for t in range(5)]
    assert _recovery.find_identical_blocks(blocks) == {}


def test_find_identical_blocks():
    blocks = [_block(0, [0] * 16), _block(1, COUNTING), _block(2, [0] * 16),
              _block(3, COUNTING[:15] + [14]), _block(4, [0] * 16)]
    same = _recovery.find_identical_blocks(blocks)
    assert list(same.keys()) == [blocks[0]]
    assert same[blocks[0]] == [blocks[2], blocks[4]]


def test_find_multiple_identical_blocks():
    blocks = [_block(0, [0] * 16), _block(1, COUNTING), _block(2, [0] * 16),
              _block(3, COUNTING), _block(4, [0] * 16)]
    same = _recovery.find_identical_blocks(blocks)
    assert list(same.keys()) == [blocks[0], blocks[1]]
    assert len(same[blocks[0]]) == 2
    assert len(same[blocks[1]]) == 1


@pytest.mark.parametrize('last, first, second, fifteenth', [
    (0x5f5e5d5c, 0x23222120, 0x27262524, 0x5b5a5958),
    # wraps around within each byte
    (0x1f1e1d1c, 0xe3e2e1e0, 0xe7e6e5e4, 0x1b1a1918),
])
def test_sequence_block(last, first, second, fifteenth):
    block = _recovery.generate_sequence_block(last)
    assert block.values[0] == first
    assert block.values[1] == second
    assert block.values[14] == fifteenth
    assert block.values[15] == last
    assert all(_recovery.is_sequence_part(v) for v in block.values)


def test_block_parts():
    assert _recovery.is_sequence_part(0x03020100)
    assert _recovery.is_sequence_part(0x020100ff) is False
    assert _recovery.is_sequence_part(0x04030201) is False
    assert _recovery.is_b0b0_part(0xb0b0b0b0)
    assert _recovery.is_b0b0_part(0xb0b0b0b1) is False


def test_header_index_end_block(sample_bytes):
    encrypted = tpsbuilder.encrypt(sample_bytes, 'a')
    blocks = _recovery.load_blocks(encrypted)
    crypt = _recovery.header_index_end_block(blocks, True)
    plain = _recovery.header_index_end_block(blocks, False)
    pages = (len(sample_bytes) - 0x200) // 0x100

    assert crypt.offset == plain.offset == 0x1c0
    assert plain.values == (pages,) * 16
    assert Key('a').decrypt_words(crypt.values) == list(plain.values)

    with pytest.raises(_exceptions.InvalidArgumentException):
        _recovery.header_index_end_block(blocks[:5], True)


###############
# partial key #
###############

def test_partial_key_compare():
    k1 = PartialKey()
    k2 = k1.apply(15, 42)
    k3 = k1.apply(15, 42)

    assert k1 != k2
    assert k2 == k3
    assert k1.compare(k2) == -42
    assert k2.compare(k1) == 42
    assert k2.compare(k3) == 0


def test_partial_key_invalid_indexes():
    key = PartialKey()
    assert key.invalid_indexes() == list(range(15, -1, -1))
    assert not key.is_complete()
    with pytest.raises(_exceptions.InvalidArgumentException):
        key.key_part(3)
    with pytest.raises(_exceptions.IncompleteException):
        key.to_key()

    for t in range(16):
        key = key.apply(t, t)
    assert key.invalid_indexes() == []
    assert key.is_complete()
    assert key.to_key() == Key.from_words(range(16))


def test_partial_decrypt():
    key = Key('aaa')
    crypt = _block(0, key.encrypt_words([0] * 16))
    result = PartialKey().apply(15, key.words[15]).partial_decrypt(15, crypt)
    assert result.values[15] == 0


def test_partial_key_merge():
    a = PartialKey().apply(1, 10)
    b = PartialKey().apply(2, 20).apply(15, 99)
    merged = a.merge(b)
    assert merged.invalid_indexes() == [15] + list(range(14, 2, -1)) + [0]
    assert (merged.key_part(1), merged.key_part(2)) == (10, 20)
    with pytest.raises(_exceptions.InvalidArgumentException):
        a.merge(PartialKey().apply(1, 11))


def test_partial_key_serialization():
    key = PartialKey().apply(3, 0xdeadbeef).apply(15, 7)
    btstr = key.to_bitstream()
    btstr.pos = 0
    assert PartialKey.read(btstr) == key


#########
# scans #
#########

def _window(words, width=0x400):
    return lambda idx: [(words[idx] - width, words[idx] + width)]


def test_scanner_arguments():
    with pytest.raises(_exceptions.InvalidArgumentException):
        _recovery.Scanner(workers=0)


def test_scanner_partitions():
    scanner = _recovery.Scanner(workers=4, partitions=3, chunksize=100,
                                candidates=lambda idx: [(-10, 1000), (5000, 5001)])
    assert scanner.scan(0, lambda k: k % 250 == 0) == [0, 250, 500, 750, 5000]
    assert scanner.scan(0, lambda k: k % 250 == 1) == [1, 251, 501, 751]
    assert scanner.scan(0, lambda k: k == 5000) == [5000]


def test_scanner_cancel():
    cancel = threading.Event()
    cancel.set()
    scanner = _recovery.Scanner(cancel=cancel, candidates=lambda idx: [(0, 10)])
    with pytest.raises(_exceptions.CancelledException):
        scanner.scan(0, lambda k: k == 1)


def test_reverse_scan_window():
    key = Key('aaa')
    crypt = _block(0, key.encrypt_words([0] * 16))
    plain = _block(0, [0] * 16, False)
    scanner = _recovery.Scanner(candidates=_window(key.words))

    results = _recovery.reverse_key_index_scan(PartialKey(), 15, crypt, plain, scanner)
    found = dict(results)
    wanted = PartialKey().apply(15, key.words[15])
    assert wanted in found
    assert found[wanted].values[15] == 0


def test_forward_scan_window():
    key = Key('aaa')
    crypt = _block(0, key.encrypt_words([0] * 16))
    plain = _block(0, [0] * 16, False)
    scanner = _recovery.Scanner(candidates=_window(key.words))

    results = _recovery.forward_key_index_scan(PartialKey(), 3, crypt, plain, scanner)
    assert [k for k, _ in results] == [PartialKey().apply(3, key.words[3])]


def test_forward_round_matches_cipher():
    # word 0 swaps with word 1, the other words only with themselves
    words = [0x10000001] + [(t << 4) | t for t in range(1, 16)]
    key = Key.from_words(words)
    plain = _block(0, [0x11111111 * (t % 4) for t in range(16)], False)
    crypt = _block(0, key.encrypt_words(plain.values))
    scanner = _recovery.Scanner(candidates=_window(words, 16))

    results = dict(_recovery.forward_key_index_scan(PartialKey(), 0, crypt, plain, scanner))
    block = results[PartialKey().apply(0, words[0])]
    assert block.values[0] == crypt.values[0]
    # first round only: 0x10000001 + (~0x10000001 & 0x11111111)
    assert block.values[:2] == (0x11111111, 0x20000002)
    assert block.values[2:] == plain.values[2:]


def test_self_scan_window():
    key = Key('1')
    crypt = _block(0, key.encrypt_words([0] * 16))
    plain = _block(0, [0] * 16, False)
    scanner = _recovery.Scanner(candidates=_window(key.words))
    # word 15 of this key swaps with word 0
    assert _recovery.key_index_self_scan(PartialKey(), 15, crypt, plain, scanner) == []


def test_self_scan_subset_of_reverse_scan():
    words = [(t << 4) | t for t in range(16)]
    key = Key.from_words(words)
    crypt = _block(0, key.encrypt_words([0] * 16))
    plain = _block(0, [0] * 16, False)
    scanner = _recovery.Scanner(candidates=_window(words, 0x40))

    selfkeys = [k for k, _ in _recovery.key_index_self_scan(PartialKey(), 5, crypt, plain, scanner)]
    reverse = [k for k, _ in _recovery.reverse_key_index_scan(PartialKey(), 5, crypt, plain, scanner)]
    assert PartialKey().apply(5, words[5]) in selfkeys
    assert set(selfkeys) <= set(reverse)


def test_index_scan_combines_reverse_and_forward(monkeypatch):
    words = [(t << 4) | t for t in range(16)]
    key = Key.from_words(words)
    crypt = _block(0, key.encrypt_words([0] * 16))
    plain = _block(0, [0] * 16, False)
    scanner = _recovery.Scanner(candidates=_window(words))
    start = RecoveryState.start(crypt, plain)

    def no_self_scan(*args, **kwargs):
        raise AssertionError('self scan repeated')

    monkeypatch.setattr(_recovery, 'key_index_self_scan', no_self_scan)
    found = start.index_scan(14, scanner)
    expected = set(st.key for st in start.reverse_index_scan(14, scanner))
    expected |= set(st.key for st in start.forward_index_scan(14, scanner))
    assert set(st.key for st in found) == expected
    assert PartialKey().apply(14, words[14]) in expected


############
# recovery #
############

def _recoverable_file(password):
    ''' the sample file followed by a page of sequence blocks, plain and encrypted '''

    builder = tpsbuilder.sample_builder()
    builder.tail = bytes(range(256))
    plain = builder.build()
    return plain, tpsbuilder.encrypt(plain, password)


def test_recover_key():
    # all words of this key swap with a lower index
    key = Key('1')
    plain, encrypted = _recoverable_file('1')
    keys = _recovery.recover_key(encrypted, candidates=_window(key.words))
    assert key in keys
    assert Key('1').decrypt_block(encrypted[:64]) == plain[:64]


def test_recover_key_blocks():
    key = Key('1')
    _, encrypted = _recoverable_file('1')
    blocks = _recovery.load_blocks(encrypted)
    assert key in _recovery.recover_key(blocks, candidates=_window(key.words), workers=2)


def test_recover_key_resume(tmp_path):
    key = Key('1')
    _, encrypted = _recoverable_file('1')
    checkpoint = str(tmp_path / 'state.chk')
    cancel = threading.Event()
    window = _window(key.words)

    def cancel_at_13(idx):
        if idx == 13:
            cancel.set()
        return window(idx)

    with pytest.raises(_exceptions.CancelledException):
        _recovery.recover_key(encrypted, checkpoint, cancel=cancel, candidates=cancel_at_13)

    index, states = _recovery.read_checkpoint(checkpoint)
    assert index == 13
    assert states
    assert all(st.key.valid[14] and st.key.valid[15] for st in states)

    assert key in _recovery.recover_key(encrypted, checkpoint, candidates=window)
    index, states = _recovery.read_checkpoint(checkpoint)
    assert index == -1


def test_checkpoint(tmp_path):
    encrypted = _block(0x1c0, COUNTING)
    plaintext = _block(0x1c0, [4] * 16, False)
    state = RecoveryState(PartialKey().apply(15, 0x42), encrypted, plaintext,
                          b0b0_blocks=[_block(0x400, [0xb0b0b0b0] * 16)],
                          sequential_blocks=[_block(0x500, COUNTING), _block(0x600, COUNTING)])
    filename = str(tmp_path / 'state.chk')
    _recovery.write_checkpoint(filename, 14, [state])

    index, states = _recovery.read_checkpoint(filename, encrypted, plaintext)
    assert index == 14
    assert states == [state]
    assert states[0].sequential_blocks == state.sequential_blocks
    assert states[0].original_plaintext is plaintext

    copy = RecoveryState.from_bytes(state.to_bytes())
    assert copy == state
    assert copy.b0b0_blocks == state.b0b0_blocks


def test_bad_checkpoint(tmp_path):
    filename = tmp_path / 'bad.chk'
    filename.write_bytes(b'not a checkpoint')
    with pytest.raises(_exceptions.UserFeedbackException):
        _recovery.read_checkpoint(str(filename))


def test_state_order():
    crypt = _block(0x1c0, COUNTING)
    plain = _block(0x1c0, [0] * 16, False)
    few = RecoveryState(PartialKey().apply(15, 1), crypt, plain, b0b0_blocks=[crypt])
    many = RecoveryState(PartialKey().apply(15, 2), crypt, plain, b0b0_blocks=[crypt, crypt])
    assert _recovery.unique_sorted([few, many, few]) == [many, few]


def test_verify():
    key = Key('a')
    plain = _block(0x1c0, [4] * 16, False)
    crypt = _block(0x1c0, key.encrypt_words(plain.values))
    assert _recovery.verify(key, crypt, plain)
    assert not _recovery.verify(Key('b'), crypt, plain)


####################
# full range scans #
####################

def _zero_blocks(password):
    key = Key(password)
    crypt = Block(0, key.encrypt_words([0] * 16), True)
    plain = Block(0, [0] * 16, False)
    return key, crypt, plain


@pytest.mark.slow
def test_reverse_scan_full_range():
    key, crypt, plain = _zero_blocks('aaa')
    results = _recovery.reverse_key_index_scan(PartialKey(), 15, crypt, plain)
    assert PartialKey().apply(15, key.words[15]) in [k for k, _ in results]
    assert len(results) == 1216


@pytest.mark.slow
def test_forward_scan_full_range():
    key, crypt, plain = _zero_blocks('aaa')
    results = _recovery.forward_key_index_scan(PartialKey(), 3, crypt, plain)
    assert [k for k, _ in results] == [PartialKey().apply(3, key.words[3])]


@pytest.mark.slow
def test_scan_and_reduce_full_range():
    key, crypt, plain = _zero_blocks('nasigoreng')
    seq = Block(0, key.encrypt_words(Block.from_bytes(bytes(range(64))).values), False)
    b0b0 = Block(0, key.encrypt_words([0xb0b0b0b0] * 16), False)
    blocks = [crypt, b0b0.moved(0x400), seq.moved(0x500), b0b0.moved(0x600),
              seq.moved(0x700), b0b0.moved(0x800), seq.moved(0xa00)]

    start = RecoveryState.start(crypt, plain)
    assert len(start.index_self_scan(8)) == 1
    assert len(start.index_self_scan(15)) == 0

    states = start.index_scan(15)
    assert len(states) == 192
    states = RecoveryState.reduce_first(states, 15, blocks)
    assert len(states) == 2

    state = states[0]
    assert state.b0b0_blocks and state.sequential_blocks
    assert RecoveryState.from_bytes(state.to_bytes()) == state

    found = state.index_scan(14)
    assert len(found) == 1450
    reduced = RecoveryState.reduce_next(found, 14)
    assert len(reduced) == 2
    for st in reduced:
        assert st.key.key[15] == state.key.key[15]
        assert all(_recovery.is_b0b0_part(b.values[14]) for b in st.b0b0_blocks)
