"""
Chorus Server - authoritative side of the Chorus synchronization engine.

This package records every authoritative mutation of a tracked table in an
append-only change log (the "harmonics" log), streams new entries to scoped
subscription channels, serves point-in-time snapshots for bootstrap and
catch-up, and exposes validated write actions that clients replay from their
offline queues.

Architecture:
    ┌──────────────┐   ┌───────────────┐   ┌──────────────────────┐
    │ Write Action │──▶│  RecordStore  │──▶│ ChangeCapture        │
    │   Gateway    │   │ (SQLite rows) │   │ (harmonics, same txn)│
    └──────────────┘   └───────────────┘   └──────────┬───────────┘
                                                      │
                                                      ▼
                       ┌───────────────┐   ┌──────────────────────┐
                       │ ScopeResolver │◀──│ BroadcastDispatcher  │
                       └───────────────┘   └──────────┬───────────┘
                                                      │ publish
                                                      ▼
                                           ┌──────────────────────┐
                                           │ Broker (memory/Kafka)│
                                           └──────────┬───────────┘
                                                      │
                                  ┌───────────────────┴───────────┐
                                  ▼                               ▼
                          ┌──────────────┐               ┌──────────────┐
                          │ HTTP long-   │               │  Snapshot /  │
                          │ poll channel │               │  catch-up    │
                          └──────────────┘               └──────────────┘

Invariants:
    - Harmonic ids are globally ordered; one monotonic cursor covers all tables
    - A harmonic is persisted in the same transaction as its mutation
    - processed_at is set at most once per harmonic
    - Harmonics are immutable after creation

How to change safely:
    - Never reuse or rewrite harmonic ids
    - New wire fields must be optional for older clients
    - Test concurrent dispatch with two dispatcher instances on one database
"""

from ._version import __version__

__all__ = ["__version__"]
