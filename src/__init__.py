"""
Shielded Pool - privacy pool core for a mobile wallet

Fixed-denomination pools where deposits are commitments in an incremental
Merkle tree and withdrawals are zero-knowledge proofs of membership that
reveal only a nullifier.

Core Components:
    - PrivacySession: Caller-owned context wiring every component together
    - PrivacyPoolManager: Deposit, withdrawal and transfer lifecycle
    - IncrementalMerkleTree: Commitment tree with a historical root window
    - NullifierLedger: Spent set and advisory pending-spend reservations
    - ProofEngine: Witness building, proving, verification, contract encoding
    - AliasManager / TransactionRouter: Alias-bound routing of private sends
    - CircuitAnalyzer: Circuit metrics, self-tests and benchmarks

Infrastructure:
    - storage: Local record stores (JSON file, memory)
    - monitoring: Metrics and structured logging

Usage:
    from session import PrivacySession

    session = PrivacySession.create()
    note = await session.manager.create_shielded_deposit("0.1", pool_address)
    await session.manager.create_shielded_withdrawal(note, recipient)
"""

__version__ = "0.1.0"
