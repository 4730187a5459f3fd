"""Shared fixtures."""

from __future__ import annotations

import pytest

from totpkeeper.clock import FakeClock
from totpkeeper.store import AccountStore

SECRET_A = "JBSWY3DPEHPK3PXP"
SECRET_B = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
SECRET_C = "KRSXG5CTMVRXEZLUKN2XAZLSKNSWG4TF"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(start=1_700_000_000, monotonic_start=1000)


@pytest.fixture
def store(clock: FakeClock) -> AccountStore:
    return AccountStore(clock=clock)
