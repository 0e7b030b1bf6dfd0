"""govkit: staged migrations for remote governance systems.

Runs changes against a system you can only modify by submitting proposals
through a governance or execution layer, and proves the change took effect.

Architecture:
    govkit/
    ├── __init__.py      # Package entry, version
    ├── core.py          # Primitives: sha256, canonical JSON, YAML, durations
    ├── pipeline/        # Variable store, encoder, ports, lifecycle, runner
    ├── migrations/      # Concrete migrations
    └── schemas/         # JSON Schema for the payload document

A migration is four stages run in order:

    prepare    provision prerequisites, freeze a VariableSet
    enact      encode operations into a payload, submit it through a Relay
    enacted    non-blocking check that the remote domain applied it
    verify     read post-state through an Oracle, compare with the VariableSet
"""

__version__ = "0.1.0"

from govkit.core import (
    canonical_digest,
    canonical_json_bytes,
    parse_duration_seconds,
    sha256_bytes,
)

__all__ = [
    "__version__",
    "canonical_digest",
    "canonical_json_bytes",
    "parse_duration_seconds",
    "sha256_bytes",
]
