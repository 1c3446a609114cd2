"""
Pytest configuration and shared fixtures for shielded pool tests.

This module provides shared fixtures and test configuration including:
- A small-depth configuration with fast key derivation and short polling
- A session wired to the in-memory chain and an in-memory store
- A standalone proof engine for circuit-level tests
"""

import os
import sys
from decimal import Decimal

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config import PoolConfig, PrivacyConfig
from proof_backend import SchnorrAttestationBackend
from proof_engine import ProofEngine
from session import PrivacySession
from storage import MemoryStore

TEST_DEPTH = 8
POOL_ADDRESS = "0x" + "1" * 40
LARGE_POOL_ADDRESS = "0x" + "2" * 40
RECIPIENT = "0x" + "ab" * 20
OTHER_RECIPIENT = "0x" + "cd" * 20
TEST_KEY = "test-encryption-key"


def make_config(**overrides) -> PrivacyConfig:
    """Fast test configuration: shallow trees, cheap KDF, short polling."""
    values = dict(
        tree_depth=TEST_DEPTH,
        pools=[
            PoolConfig(Decimal("0.1"), POOL_ADDRESS, tree_depth=TEST_DEPTH),
            PoolConfig(Decimal("1.0"), LARGE_POOL_ADDRESS, tree_depth=TEST_DEPTH),
        ],
        storage_backend="memory",
        encryption_key=TEST_KEY,
        kdf_iterations=1000,
        confirmation_base_delay=0.001,
        confirmation_max_delay=0.005,
        confirmation_max_wait=0.05,
        broadcast_base_delay=0.001,
        broadcast_max_retries=3,
    )
    values.update(overrides)
    return PrivacyConfig(**values)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def session(config, store):
    """A wallet session against a fresh in-memory chain."""
    return PrivacySession.create(config, store=store)


@pytest.fixture
def chain(session):
    return session.chain


@pytest.fixture
def manager(session):
    return session.manager


@pytest.fixture(scope="module")
def engine():
    """Proof engine with its own keys, shared within a test module."""
    return ProofEngine(SchnorrAttestationBackend(), tree_depth=TEST_DEPTH, timeout=30.0)
