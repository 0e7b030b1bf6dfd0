"""
govkit Capability Ports

The three collaborators a migration reaches the outside world through:

    Provisioner   creates or looks up resources, returns stable handles
    Relay         carries an opaque payload into the remote execution domain
    Oracle        reads current state of the target system

The pipeline never talks to a network directly; it calls these interfaces.
In-memory implementations back the tests and dry runs, and the Retrying*
adapters apply a RetryPolicy to every call.

Error contract:

    Provisioner.ensure     ProvisionError   spec invalid / dependency unresolved
    Provisioner.describe   NotFoundError    unknown handle
    Relay.submit           RelayError       malformed payload, unauthorized,
                                            unknown destination
    Relay.state            RelayError       unknown proposal
    Oracle.read            NotFoundError    unknown target or field
    any                    TransportError   transient; retried by adapters

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from govkit.core import canonical_digest
from govkit.pipeline.encoding import (
    ADDRESS_PATTERN,
    DecodedPayload,
    Operation,
    Payload,
    decode_payload,
)
from govkit.pipeline.errors import (
    EncodingError,
    NotFoundError,
    OracleError,
    ProvisionError,
    RelayError,
    RetryExhaustedError,
    TransportError,
)
from govkit.pipeline.observability import PipelineLayer, get_logger
from govkit.pipeline.resilience import RetryPolicy


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass(frozen=True)
class ResourceSpec:
    """
    Description of a resource a migration needs.

    ``alias`` names the resource within its domain. With ``create=False`` the
    spec is a pure lookup: an unknown alias is an unresolved dependency.
    """
    kind: str
    alias: str
    args: Tuple[Any, ...] = ()
    domain: str = ""
    create: bool = True

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(self.args))
        if not self.kind or not self.alias:
            raise ProvisionError("Resource spec requires kind and alias")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.domain, self.alias)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "alias": self.alias,
            "args": list(self.args),
            "domain": self.domain,
            "create": self.create,
        }


class ProposalState(Enum):
    """Lifecycle of a proposal in the remote domain."""
    PENDING = "pending"
    ACTIVE = "active"
    QUEUED = "queued"
    EXECUTED = "executed"
    DEFEATED = "defeated"
    CANCELED = "canceled"
    EXPIRED = "expired"

    def is_terminal(self) -> bool:
        return self in {
            ProposalState.EXECUTED,
            ProposalState.DEFEATED,
            ProposalState.CANCELED,
            ProposalState.EXPIRED,
        }

    def is_failure(self) -> bool:
        return self.is_terminal() and self != ProposalState.EXECUTED


@dataclass(frozen=True)
class ProposalHandle:
    """Durable identifier of a submitted change request."""
    proposal_id: str
    destination: str
    payload_digest: str
    submitted_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "destination": self.destination,
            "payload_digest": self.payload_digest,
            "submitted_at": self.submitted_at,
        }


# =============================================================================
# PORT INTERFACES
# =============================================================================

class Provisioner(ABC):
    """Creates or looks up resources; upsert semantics."""

    @abstractmethod
    def ensure(self, spec: ResourceSpec) -> str:
        """Return the handle for ``spec``, creating the resource if needed."""

    @abstractmethod
    def describe(self, handle: str) -> Mapping[str, Any]:
        """Properties of an existing resource."""


class Relay(ABC):
    """Submits opaque payloads into a remote execution domain."""

    @abstractmethod
    def submit(self, payload: Payload, destination: str, budget: int) -> ProposalHandle:
        """Submit a payload; the payload bytes are passed through untouched."""

    @abstractmethod
    def state(self, handle: ProposalHandle) -> ProposalState:
        """Current state of a submitted proposal."""


class Oracle(ABC):
    """Read-only view of the target system."""

    @abstractmethod
    def read(self, target: str, field: str) -> Any:
        """Current value of ``field`` on ``target``."""


@dataclass
class Ports:
    """The injected collaborators for one run. Not owned by any migration."""
    provisioner: Provisioner
    relay: Relay
    oracle: Oracle

    def with_retry(self, policy: RetryPolicy) -> "Ports":
        """Same ports with every call wrapped in ``policy``."""
        return Ports(
            provisioner=RetryingProvisioner(_unwrap(self.provisioner), policy),
            relay=RetryingRelay(_unwrap(self.relay), policy),
            oracle=RetryingOracle(_unwrap(self.oracle), policy),
        )


# =============================================================================
# RETRYING ADAPTERS
# =============================================================================

class _RetryingPort:
    port_name = "port"

    def __init__(self, inner: Any, policy: RetryPolicy):
        self.inner = inner
        self.policy = policy
        self._log = get_logger(self.port_name, PipelineLayer.PORTS)

    def _call(
        self,
        operation: str,
        func: Callable[[], Any],
        exhausted: Callable[[RetryExhaustedError], Exception],
    ) -> Any:
        attempts = 0

        def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            try:
                return func()
            except TransportError as e:
                self._log.warning(
                    f"{self.port_name}.{operation} transport failure",
                    operation=operation,
                    attempt=attempts,
                    max_attempts=self.policy.max_attempts,
                    error=str(e),
                )
                raise

        try:
            return self.policy.execute(attempt)
        except RetryExhaustedError as e:
            raise exhausted(e) from e


def _unwrap(port: Any) -> Any:
    return port.inner if isinstance(port, _RetryingPort) else port


class RetryingProvisioner(_RetryingPort, Provisioner):
    port_name = "provisioner"

    def ensure(self, spec: ResourceSpec) -> str:
        return self._call(
            "ensure",
            lambda: self.inner.ensure(spec),
            lambda e: ProvisionError(f"Could not ensure {spec.alias}: {e}"),
        )

    def describe(self, handle: str) -> Mapping[str, Any]:
        return self._call(
            "describe",
            lambda: self.inner.describe(handle),
            lambda e: ProvisionError(f"Could not describe {handle}: {e}"),
        )


class RetryingRelay(_RetryingPort, Relay):
    port_name = "relay"

    def submit(self, payload: Payload, destination: str, budget: int) -> ProposalHandle:
        return self._call(
            "submit",
            lambda: self.inner.submit(payload, destination, budget),
            lambda e: RelayError(f"Submission to {destination} failed: {e}", attempts=e.attempts),
        )

    def state(self, handle: ProposalHandle) -> ProposalState:
        return self._call(
            "state",
            lambda: self.inner.state(handle),
            lambda e: RelayError(
                f"State of proposal {handle.proposal_id} unavailable: {e}",
                attempts=e.attempts,
            ),
        )


class RetryingOracle(_RetryingPort, Oracle):
    port_name = "oracle"

    def read(self, target: str, field: str) -> Any:
        return self._call(
            "read",
            lambda: self.inner.read(target, field),
            lambda e: OracleError(f"Read of {target}.{field} failed: {e}"),
        )


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

def _handle_key(handle: str) -> str:
    return handle.lower() if ADDRESS_PATTERN.match(handle) else handle


class InMemoryProvisioner(Provisioner):
    """
    Provisioner backed by a dict.

    Handles are derived from the spec content, so the same spec always maps
    to the same address-like handle. ``creations`` counts real creations.
    """

    def __init__(self, domain: str = "local"):
        self.domain = domain
        self._resources: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._by_handle: Dict[str, Tuple[str, str]] = {}
        self._lock = threading.RLock()
        self.creations = 0

    def _key(self, spec: ResourceSpec) -> Tuple[str, str]:
        return (spec.domain or self.domain, spec.alias)

    def register_existing(
        self,
        alias: str,
        handle: str,
        kind: str,
        domain: str = "",
        **properties: Any,
    ) -> str:
        """Seed a resource that already exists in the domain."""
        key = (domain or self.domain, alias)
        with self._lock:
            self._resources[key] = {
                "handle": handle,
                "kind": kind,
                "alias": alias,
                "domain": key[0],
                "args": (),
                **properties,
            }
            self._by_handle[_handle_key(handle)] = key
        return handle

    def ensure(self, spec: ResourceSpec) -> str:
        key = self._key(spec)
        with self._lock:
            existing = self._resources.get(key)
            if existing is not None:
                if existing["kind"] != spec.kind:
                    raise ProvisionError(
                        f"{spec.alias} exists as {existing['kind']}, not {spec.kind}"
                    )
                if spec.create and existing["args"] and existing["args"] != spec.args:
                    raise ProvisionError(
                        f"{spec.alias} exists with different constructor arguments"
                    )
                return existing["handle"]

            if not spec.create:
                raise ProvisionError(f"Unresolved dependency: {spec.alias} ({spec.kind})")

            handle = "0x" + canonical_digest({
                "domain": key[0],
                "alias": spec.alias,
                "kind": spec.kind,
                "args": list(spec.args),
            })[:40]
            self._resources[key] = {
                "handle": handle,
                "kind": spec.kind,
                "alias": spec.alias,
                "domain": key[0],
                "args": spec.args,
            }
            self._by_handle[handle] = key
            self.creations += 1
            return handle

    def describe(self, handle: str) -> Mapping[str, Any]:
        with self._lock:
            key = self._by_handle.get(_handle_key(handle))
            if key is None:
                raise NotFoundError(handle)
            return dict(self._resources[key])


@dataclass
class _Proposal:
    handle: ProposalHandle
    payload: Payload
    decoded: DecodedPayload
    budget: int
    state: ProposalState = ProposalState.PENDING


class InMemoryRelay(Relay):
    """
    Relay that keeps proposals in memory.

    Submitting byte-identical payloads twice returns the original handle,
    unless that proposal was defeated, canceled or expired; then a fresh
    proposal is opened.
    execute() applies a proposal through ``on_execute`` and marks it
    EXECUTED, standing in for the remote domain's governance.
    """

    def __init__(
        self,
        destinations: Optional[Set[str]] = None,
        on_execute: Optional[Callable[[DecodedPayload], None]] = None,
        authorized: bool = True,
    ):
        self.destinations = destinations
        self.on_execute = on_execute
        self.authorized = authorized
        self._proposals: Dict[str, _Proposal] = {}
        self._by_digest: Dict[Tuple[str, str], str] = {}
        self._lock = threading.RLock()
        self._next_id = 1
        self._injected: List[Exception] = []
        self.submissions = 0

    def reject_next(self, error: Optional[Exception] = None) -> None:
        """Make the next submit() raise ``error`` (a RelayError by default)."""
        with self._lock:
            self._injected.append(error or RelayError("Proposal rejected"))

    def submit(self, payload: Payload, destination: str, budget: int) -> ProposalHandle:
        with self._lock:
            self.submissions += 1
            if self._injected:
                raise self._injected.pop(0)
            if not self.authorized:
                raise RelayError("Submitter is not authorized to propose")
            if self.destinations is not None and destination not in self.destinations:
                raise RelayError(f"Unknown destination: {destination}")
            try:
                decoded = decode_payload(payload.data)
            except EncodingError as e:
                raise RelayError(f"Malformed payload: {e}") from e

            dedup_key = (destination, payload.digest)
            known = self._by_digest.get(dedup_key)
            if known is not None and not self._proposals[known].state.is_failure():
                return self._proposals[known].handle

            proposal_id = str(self._next_id)
            self._next_id += 1
            handle = ProposalHandle(
                proposal_id=proposal_id,
                destination=destination,
                payload_digest=payload.digest,
            )
            self._proposals[proposal_id] = _Proposal(
                handle=handle,
                payload=payload,
                decoded=decoded,
                budget=budget,
            )
            self._by_digest[dedup_key] = proposal_id
            return handle

    def _proposal(self, handle: ProposalHandle) -> _Proposal:
        found = self._proposals.get(handle.proposal_id)
        if found is None:
            raise RelayError(f"Unknown proposal: {handle.proposal_id}")
        return found

    def state(self, handle: ProposalHandle) -> ProposalState:
        with self._lock:
            return self._proposal(handle).state

    def set_state(self, handle: ProposalHandle, state: ProposalState) -> None:
        with self._lock:
            self._proposal(handle).state = state

    def execute(self, handle: ProposalHandle) -> None:
        """Apply the proposal's operations and mark it EXECUTED."""
        with self._lock:
            proposal = self._proposal(handle)
            if proposal.state.is_terminal():
                raise RelayError(
                    f"Proposal {handle.proposal_id} already {proposal.state.value}"
                )
            if self.on_execute is not None:
                self.on_execute(proposal.decoded)
            proposal.state = ProposalState.EXECUTED

    def execute_all(self) -> List[ProposalHandle]:
        """Execute every pending proposal in submission order."""
        with self._lock:
            pending = [
                p.handle for p in self._proposals.values()
                if not p.state.is_terminal()
            ]
        for handle in pending:
            self.execute(handle)
        return pending

    def decoded(self, handle: ProposalHandle) -> DecodedPayload:
        with self._lock:
            return self._proposal(handle).decoded

    @property
    def proposals(self) -> List[ProposalHandle]:
        with self._lock:
            return [p.handle for p in self._proposals.values()]


OperationEffect = Callable[["InMemoryOracle", Operation], None]


class InMemoryOracle(Oracle):
    """
    Oracle over a dict of ``(target, field) -> value``.

    Effects registered per selector let executed proposals change the state
    the oracle reports, see apply().
    """

    def __init__(self, state: Optional[Mapping[Tuple[str, str], Any]] = None):
        self._state: Dict[Tuple[str, str], Any] = {}
        self._effects: Dict[str, OperationEffect] = {}
        self._lock = threading.RLock()
        self.reads = 0
        for (target, fld), value in (state or {}).items():
            self.set(target, fld, value)

    def set(self, target: str, field: str, value: Any) -> None:
        with self._lock:
            self._state[(_handle_key(target), field)] = value

    def read(self, target: str, field: str) -> Any:
        with self._lock:
            self.reads += 1
            key = (_handle_key(target), field)
            if key not in self._state:
                raise NotFoundError(target, field)
            return self._state[key]

    def on(self, selector: str, effect: OperationEffect) -> None:
        """Register how an operation with ``selector`` changes state."""
        self._effects[selector] = effect

    def apply(self, decoded: DecodedPayload) -> None:
        """Apply every operation of an executed payload with a registered effect."""
        with self._lock:
            for op in decoded.operations:
                effect = self._effects.get(op.selector)
                if effect is not None:
                    effect(self, op)
