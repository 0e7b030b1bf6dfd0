"""
govkit Migration Lifecycle

A Migration is one unit of change. It moves through four stages in strict
order, each consuming what the previous one produced:

    PENDING ──prepare──▶ PREPARED ──enact──▶ AWAITING ──enacted──▶ APPLIED
                                                                     │
                                                                  verify
                                                                     │
                                                         ┌───────────┴───────────┐
                                                         ▼                       ▼
                                                      VERIFIED                 FAILED
       (any non-terminal stage) ──fail──▶ FAILED

    prepare   provisions prerequisites and freezes the VariableSet
    enact     builds operations from the VariableSet, encodes them into a
              payload and submits it through the Relay
    enacted   non-blocking check that the remote domain applied the change
    verify    reads the post-state through the Oracle and compares it with
              the values captured at prepare time

Subclasses supply the migration-specific parts through hooks: provision(),
operations(), routing(), expectations() and, optionally, is_applied().
define_migration() builds a Migration from plain functions.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from govkit.pipeline.config import GovkitConfig, get_config
from govkit.pipeline.encoding import (
    InterfaceRegistry,
    Operation,
    RoutingMetadata,
    encode_payload,
)
from govkit.pipeline.errors import (
    NotFoundError,
    RelayError,
    StageOrderError,
    SubmissionError,
    VariableSetError,
    VerificationMismatch,
)
from govkit.pipeline.observability import PipelineLayer, get_logger
from govkit.pipeline.ports import ProposalHandle, ProposalState, Ports
from govkit.pipeline.resilience import CancellationToken
from govkit.pipeline.variables import VariableSet, VariableStore, validate_migration_id


_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


# =============================================================================
# STAGES
# =============================================================================

class MigrationStage(Enum):
    """Stages of a migration run."""
    PENDING = "pending"
    PREPARED = "prepared"
    AWAITING = "awaiting"
    APPLIED = "applied"
    VERIFIED = "verified"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in {MigrationStage.VERIFIED, MigrationStage.FAILED}


VALID_TRANSITIONS: Dict[MigrationStage, Set[MigrationStage]] = {
    MigrationStage.PENDING: {MigrationStage.PREPARED, MigrationStage.FAILED},
    MigrationStage.PREPARED: {MigrationStage.AWAITING, MigrationStage.FAILED},
    MigrationStage.AWAITING: {MigrationStage.APPLIED, MigrationStage.FAILED},
    MigrationStage.APPLIED: {MigrationStage.VERIFIED, MigrationStage.FAILED},
    # Terminal stages have no valid transitions
    MigrationStage.VERIFIED: set(),
    MigrationStage.FAILED: set(),
}


@dataclass
class StageTransition:
    """Record of a stage transition."""
    from_stage: Optional[MigrationStage]
    to_stage: MigrationStage
    timestamp: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_stage": self.from_stage.value if self.from_stage else None,
            "to_stage": self.to_stage.value,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


# =============================================================================
# VERIFICATION
# =============================================================================

@dataclass(frozen=True)
class Expectation:
    """A value the migration expects the target to report after application."""
    name: str
    target: str
    field: str
    expected: Any


def values_match(expected: Any, actual: Any) -> bool:
    """Compare an expected and an observed value; addresses ignore case."""
    if isinstance(expected, str) and isinstance(actual, str):
        if _ADDRESS.match(expected) and _ADDRESS.match(actual):
            return expected.lower() == actual.lower()
    if isinstance(expected, bool) != isinstance(actual, bool):
        return False
    return expected == actual


@dataclass
class Check:
    """One (expected, actual) pair."""
    name: str
    target: str
    field: str
    expected: Any
    actual: Any = None
    passed: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "target": self.target,
            "field": self.field,
            "expected": _plain(self.expected),
            "actual": _plain(self.actual),
            "pass": self.passed,
            "error": self.error,
        }


def _plain(value: Any) -> Any:
    if isinstance(value, bytes):
        return "0x" + value.hex()
    if isinstance(value, tuple):
        return [_plain(v) for v in value]
    if isinstance(value, (str, int, bool)) or value is None:
        return value
    return str(value)


@dataclass
class VerificationResult:
    """Outcome of verify(): every check, passed only if all passed."""
    migration_id: str
    checks: List[Check] = field(default_factory=list)
    verified_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def failures(self) -> List[Check]:
        return [c for c in self.checks if not c.passed]

    def mismatch(self) -> Optional[VerificationMismatch]:
        """The mismatch error describing every failing pair, if any."""
        if self.passed:
            return None
        return VerificationMismatch(
            self.migration_id,
            [c.to_dict() for c in self.failures],
        )

    def raise_for_mismatch(self) -> None:
        error = self.mismatch()
        if error is not None:
            raise error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "passed": self.passed,
            "verified_at": self.verified_at,
            "checks": [c.to_dict() for c in self.checks],
        }


# =============================================================================
# MIGRATION
# =============================================================================

class Migration:
    """
    The lifecycle engine for one migration.

    Example:
        class RaiseSupplyCap(Migration):
            migration_id = "1724411762_raise_supply_cap"

            def provision(self, ports):
                return {"comet": ports.provisioner.ensure(COMET_LOOKUP)}

            def operations(self, ports, vars):
                return [Operation(vars["comet"], "setSupplyCap", (ASSET, CAP))]

            def expectations(self, ports, vars):
                return [Expectation("cap", vars["comet"], "supplyCap", CAP)]

        migration = RaiseSupplyCap(registry=registry)
        vars = migration.prepare(ports)
        handle = migration.enact(ports, vars)
        while not migration.enacted(ports):
            time.sleep(15)
        result = migration.verify(ports, vars)
    """

    migration_id: str = ""
    description: str = ""

    def __init__(
        self,
        migration_id: Optional[str] = None,
        registry: Optional[InterfaceRegistry] = None,
        store: Optional[VariableStore] = None,
        config: Optional[GovkitConfig] = None,
    ):
        self.migration_id = validate_migration_id(migration_id or self.migration_id)
        self.registry = registry or InterfaceRegistry()
        self.store = store
        self.config = config
        self.declare_interfaces(self.registry)

        self._stage = MigrationStage.PENDING
        self._transitions: List[StageTransition] = []
        self._vars: Optional[VariableSet] = None
        self._handle: Optional[ProposalHandle] = None
        self._payload_digest: Optional[str] = None
        self._result: Optional[VerificationResult] = None
        self._log = get_logger("migration", PipelineLayer.MIGRATION)

        self._record_transition(None, MigrationStage.PENDING, "Migration created")

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def declare_interfaces(self, registry: InterfaceRegistry) -> None:
        """Register the remote interfaces this migration calls."""

    def provision(self, ports: Ports) -> Mapping[str, Any]:
        """Provision prerequisites; the returned mapping becomes the VariableSet."""
        return {}

    def operations(self, ports: Ports, vars: VariableSet) -> Sequence[Operation]:
        """Remote operations to bundle into the proposal."""
        return []

    def routing(self, ports: Ports, vars: VariableSet) -> RoutingMetadata:
        """Routing metadata; defaults from the ``relay`` config section."""
        config = self.config or get_config()
        return RoutingMetadata(
            destination=config.relay.destination.get(),
            budget=config.relay.budget.get(),
            description=self.description or self.migration_id,
        )

    def expectations(self, ports: Ports, vars: VariableSet) -> Sequence[Expectation]:
        """Post-state the verify stage checks."""
        return []

    def is_applied(self, ports: Ports, handle: ProposalHandle) -> bool:
        """Whether the remote domain applied the proposal."""
        state = ports.relay.state(handle)
        if state.is_failure():
            raise RelayError(f"Proposal {handle.proposal_id} {state.value}")
        return state == ProposalState.EXECUTED

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def stage(self) -> MigrationStage:
        return self._stage

    @property
    def vars(self) -> Optional[VariableSet]:
        return self._vars

    @property
    def handle(self) -> Optional[ProposalHandle]:
        return self._handle

    @property
    def payload_digest(self) -> Optional[str]:
        return self._payload_digest

    @property
    def result(self) -> Optional[VerificationResult]:
        return self._result

    @property
    def transitions(self) -> List[StageTransition]:
        return list(self._transitions)

    @property
    def is_complete(self) -> bool:
        return self._stage.is_terminal()

    def _require(self, allowed: Set[MigrationStage], attempted: str) -> None:
        if self._stage not in allowed:
            raise StageOrderError(self.migration_id, self._stage.value, attempted)

    def _record_transition(
        self,
        from_stage: Optional[MigrationStage],
        to_stage: MigrationStage,
        reason: str,
    ) -> None:
        self._transitions.append(StageTransition(
            from_stage=from_stage,
            to_stage=to_stage,
            timestamp=datetime.now(timezone.utc).isoformat(),
            reason=reason,
        ))

    def _advance(self, target: MigrationStage, reason: str) -> None:
        if target not in VALID_TRANSITIONS[self._stage]:
            raise StageOrderError(self.migration_id, self._stage.value, target.value)
        old = self._stage
        self._stage = target
        self._record_transition(old, target, reason)
        self._log.info(
            f"Migration {self.migration_id} {old.value} -> {target.value}",
            operation="transition",
            reason=reason,
        )

    def _store(self) -> VariableStore:
        if self.store is None:
            self.store = VariableStore()
        return self.store

    def _check_vars(self, vars: VariableSet) -> None:
        if not isinstance(vars, VariableSet) or vars != self._vars:
            raise VariableSetError(
                "vars",
                f"Not the variable set prepared for {self.migration_id}",
            )

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def prepare(self, ports: Ports, cancel: Optional[CancellationToken] = None) -> VariableSet:
        """
        Provision prerequisites and freeze the VariableSet.

        The store is written only after provisioning fully succeeded and no
        cancellation was signalled, so a failed or cancelled prepare leaves
        nothing behind. A rerun with the same outcome returns the stored set.
        """
        self._require({MigrationStage.PENDING}, "prepare")
        if cancel is not None:
            cancel.raise_if_cancelled("prepare")

        values = self.provision(ports) or {}

        if cancel is not None:
            cancel.raise_if_cancelled("prepare")

        self._vars = self._store().write(self.migration_id, values)
        self._advance(MigrationStage.PREPARED, f"Prepared {len(self._vars)} variable(s)")
        return self._vars

    def enact(
        self,
        ports: Ports,
        vars: VariableSet,
        cancel: Optional[CancellationToken] = None,
    ) -> Optional[ProposalHandle]:
        """
        Encode the migration's operations and submit them through the Relay.

        Returns None when the migration has no remote operations; such a
        migration counts as applied as soon as it is enacted.
        """
        self._require({MigrationStage.PREPARED}, "enact")
        self._check_vars(vars)

        ops = list(self.operations(ports, vars))
        if not ops:
            self._advance(MigrationStage.AWAITING, "No remote changes")
            return None

        routing = self.routing(ports, vars)
        payload = encode_payload(ops, routing, self.registry)

        if cancel is not None:
            cancel.raise_if_cancelled("enact")

        self._payload_digest = payload.digest
        try:
            handle = ports.relay.submit(payload, routing.destination, routing.budget)
        except SubmissionError:
            raise
        except RelayError as e:
            raise SubmissionError(self.migration_id, str(e), attempts=e.attempts) from e

        self._handle = handle
        self._advance(
            MigrationStage.AWAITING,
            f"Submitted proposal {handle.proposal_id} to {handle.destination}",
        )
        return handle

    def enacted(self, ports: Ports) -> bool:
        """
        Non-blocking check that the remote domain applied the change.

        Reads remote state only; the one local effect is recording APPLIED
        the first time the answer is yes.
        """
        self._require({MigrationStage.AWAITING, MigrationStage.APPLIED}, "poll enactment")
        if self._stage == MigrationStage.APPLIED:
            return True

        if self._handle is None:
            applied = True
        else:
            applied = self.is_applied(ports, self._handle)

        if applied:
            self._advance(MigrationStage.APPLIED, "Remote domain applied the change")
        return applied

    def verify(self, ports: Ports, vars: VariableSet) -> VerificationResult:
        """
        Compare observed post-state with the expectations built from ``vars``.

        Every expectation is checked; a missing target or field counts as a
        failing check. A failing result moves the migration to FAILED but is
        returned, not raised.
        """
        self._require({MigrationStage.APPLIED}, "verify")
        self._check_vars(vars)

        result = VerificationResult(migration_id=self.migration_id)
        for exp in self.expectations(ports, vars):
            check = Check(
                name=exp.name,
                target=exp.target,
                field=exp.field,
                expected=exp.expected,
            )
            try:
                check.actual = ports.oracle.read(exp.target, exp.field)
                check.passed = values_match(exp.expected, check.actual)
            except NotFoundError as e:
                check.error = str(e)
            result.checks.append(check)

        self._result = result
        if result.passed:
            self._advance(MigrationStage.VERIFIED, f"{len(result.checks)} check(s) passed")
        else:
            self._advance(
                MigrationStage.FAILED,
                f"{len(result.failures)} of {len(result.checks)} check(s) failed",
            )
            self._log.warning(
                f"Verification failed for {self.migration_id}",
                operation="verify",
                failures=[c.to_dict() for c in result.failures],
            )
        return result

    def fail(self, reason: str) -> bool:
        """Abandon the migration. Returns False if already terminal."""
        if self._stage.is_terminal():
            return False
        self._advance(MigrationStage.FAILED, reason)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "stage": self._stage.value,
            "is_complete": self.is_complete,
            "vars_digest": self._vars.digest if self._vars is not None else None,
            "handle": self._handle.to_dict() if self._handle else None,
            "payload_digest": self._payload_digest,
            "transitions": [t.to_dict() for t in self._transitions],
        }


# =============================================================================
# FUNCTION-DEFINED MIGRATIONS
# =============================================================================

PrepareFn = Callable[[Ports], Mapping[str, Any]]
OperationsFn = Callable[[Ports, VariableSet], Sequence[Operation]]
ExpectationsFn = Callable[[Ports, VariableSet], Sequence[Expectation]]
EnactedFn = Callable[[Ports, Optional[ProposalHandle]], bool]


class FunctionMigration(Migration):
    """Migration whose hooks are plain functions."""

    def __init__(
        self,
        migration_id: str,
        prepare: Optional[PrepareFn] = None,
        enact: Optional[OperationsFn] = None,
        expectations: Optional[ExpectationsFn] = None,
        enacted: Optional[EnactedFn] = None,
        routing: Optional[RoutingMetadata] = None,
        description: str = "",
        **kwargs: Any,
    ):
        self._prepare_fn = prepare
        self._enact_fn = enact
        self._expectations_fn = expectations
        self._enacted_fn = enacted
        self._routing = routing
        self.description = description
        super().__init__(migration_id=migration_id, **kwargs)

    def provision(self, ports: Ports) -> Mapping[str, Any]:
        return self._prepare_fn(ports) if self._prepare_fn else {}

    def operations(self, ports: Ports, vars: VariableSet) -> Sequence[Operation]:
        if self._enact_fn is None:
            return []
        return self._enact_fn(ports, vars) or []

    def routing(self, ports: Ports, vars: VariableSet) -> RoutingMetadata:
        return self._routing or super().routing(ports, vars)

    def expectations(self, ports: Ports, vars: VariableSet) -> Sequence[Expectation]:
        return self._expectations_fn(ports, vars) if self._expectations_fn else []

    def is_applied(self, ports: Ports, handle: ProposalHandle) -> bool:
        if self._enacted_fn is not None:
            return self._enacted_fn(ports, handle)
        return super().is_applied(ports, handle)


def define_migration(
    migration_id: str,
    prepare: Optional[PrepareFn] = None,
    enact: Optional[OperationsFn] = None,
    expectations: Optional[ExpectationsFn] = None,
    enacted: Optional[EnactedFn] = None,
    **kwargs: Any,
) -> FunctionMigration:
    """
    Declare a migration from functions.

        migration = define_migration(
            "1724411762_change_feeds_to_api3",
            prepare=lambda ports: {},
            enact=lambda ports, vars: [],
        )
    """
    return FunctionMigration(
        migration_id,
        prepare=prepare,
        enact=enact,
        expectations=expectations,
        enacted=enacted,
        **kwargs,
    )
