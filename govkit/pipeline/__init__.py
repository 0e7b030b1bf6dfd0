"""
govkit Pipeline

The staged migration pipeline.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          MIGRATION PIPELINE                              │
    │                                                                          │
    │  ORCHESTRATION                                                           │
    │    runner.py        Sequential runs, poll loop, error policy, reports   │
    │    migration.py     Stage state machine, verification                   │
    │                                                                          │
    │  BOUNDARIES                                                              │
    │    ports.py         Provisioner / Relay / Oracle, retrying adapters     │
    │    encoding.py      Operations to canonical payload bytes and back      │
    │    variables.py     Immutable per-migration variable sets               │
    │                                                                          │
    │  AMBIENT                                                                 │
    │    errors.py        Error hierarchy with fatal / halts_run flags        │
    │    resilience.py    Retry, poll backoff, cancellation                   │
    │    config.py        YAML and environment configuration                  │
    │    observability.py Structured logging and spans                        │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import pipeline modules on first access."""

    if name in ("VariableSet", "VariableStore", "validate_migration_id"):
        from govkit.pipeline import variables
        return getattr(variables, name)

    if name in ("FunctionSignature", "Interface", "InterfaceRegistry", "Operation",
                "RoutingMetadata", "Payload", "DecodedPayload", "PayloadEncoder",
                "encode_payload", "decode_payload"):
        from govkit.pipeline import encoding
        return getattr(encoding, name)

    if name in ("ResourceSpec", "ProposalState", "ProposalHandle", "Provisioner",
                "Relay", "Oracle", "Ports", "InMemoryProvisioner", "InMemoryRelay",
                "InMemoryOracle"):
        from govkit.pipeline import ports
        return getattr(ports, name)

    if name in ("Migration", "MigrationStage", "Expectation", "Check",
                "VerificationResult", "define_migration"):
        from govkit.pipeline import migration
        return getattr(migration, name)

    if name in ("Runner", "RunReport", "MigrationReport", "ErrorRecord"):
        from govkit.pipeline import runner
        return getattr(runner, name)

    if name in ("RetryPolicy", "PollPolicy", "CancellationToken", "BackoffStrategy"):
        from govkit.pipeline import resilience
        return getattr(resilience, name)

    raise AttributeError(f"module 'govkit.pipeline' has no attribute '{name}'")


__all__ = [
    # Variables
    "VariableSet",
    "VariableStore",
    # Encoding
    "InterfaceRegistry",
    "Operation",
    "RoutingMetadata",
    "Payload",
    "encode_payload",
    "decode_payload",
    # Ports
    "ResourceSpec",
    "Ports",
    "InMemoryProvisioner",
    "InMemoryRelay",
    "InMemoryOracle",
    # Lifecycle
    "Migration",
    "MigrationStage",
    "Expectation",
    "define_migration",
    # Runner
    "Runner",
    "RunReport",
    # Resilience
    "RetryPolicy",
    "PollPolicy",
    "CancellationToken",
]
