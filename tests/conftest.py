"""
Host Agent - Shared Test Fixtures
"""

import pytest

from hostagent.telemetry.assembler import SnapshotAssembler
from tests.fakes import FakeProcess, FakeSources


@pytest.fixture
def sources():
    processes = [FakeProcess(pid=100 + i, cpu=float(i)) for i in range(10)]
    return FakeSources(processes=processes)


@pytest.fixture
def assembler(sources):
    return SnapshotAssembler(sources, max_processes=5, cpu_sample_window=0)


@pytest.fixture
def snapshot(assembler):
    return assembler.collect()
