"""
conftest.py - Shared pytest fixtures for bridge tests

Provides:
- The reference scenario: AP holds {A: 1000, B: 500}, ES3 = {A: 5, B: 2},
  AP bound to a wallet, THOMAS registered but unbound
- A chain with TES3 and SGDC registered, driven through ScriptedLedgerClient
- Settlement and Coordinator over the above
"""

import pytest

from tests.fake_ledger import build_bridge


@pytest.fixture
def bridge():
    return build_bridge()


@pytest.fixture
def registry(bridge):
    return bridge.registry


@pytest.fixture
def chain(bridge):
    return bridge.chain


@pytest.fixture
def client(bridge):
    return bridge.client


@pytest.fixture
def settlement(bridge):
    return bridge.settlement


@pytest.fixture
def coordinator(bridge):
    return bridge.coordinator
