''' conftest.py - shared fixtures and the slow marker

Copyright (c) 2022 Netherlands Forensic Institute - MIT License
'''

import pytest

import tpsbuilder


def pytest_addoption(parser):
    parser.addoption('--runslow', action='store_true', default=False,
                     help='run the slow (full key space) key recovery tests')


def pytest_configure(config):
    config.addinivalue_line('markers', 'slow: scans the full 32-bit key word space')


def pytest_collection_modifyitems(config, items):
    if config.getoption('--runslow'):
        return
    skip_slow = pytest.mark.skip(reason='needs --runslow')
    for item in items:
        if 'slow' in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture(scope='session')
def sample_bytes():
    return tpsbuilder.sample()


@pytest.fixture
def sample_file(tmp_path, sample_bytes):
    path = tmp_path / 'sample.tps'
    path.write_bytes(sample_bytes)
    return str(path)


@pytest.fixture
def encrypted_file(tmp_path, sample_bytes):
    path = tmp_path / 'encrypted.tps'
    path.write_bytes(tpsbuilder.encrypt(sample_bytes, 'a'))
    return str(path)
