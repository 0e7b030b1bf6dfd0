"""
govkit Runner

Drives migrations through their stages, one migration at a time:

    for each migration:
        prepare ─▶ enact ─▶ poll enacted (backoff, timeout) ─▶ verify
           │         │            │                             │
           └─────────┴────────────┴──── errors ─────────────────┘
                                   │
                                   ▼
                  fatal:      abandon this migration (FAILED)
                  halts_run:  skip the remaining migrations
                  otherwise:  record and carry on

Every port call goes through the retry policy. Every error, fatal or not,
lands in the RunReport; nothing fails silently.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml

from govkit.core import now_iso8601
from govkit.pipeline.config import GovkitConfig
from govkit.pipeline.errors import EnactmentTimeout, GovkitError, StageOrderError
from govkit.pipeline.migration import Migration, MigrationStage, VerificationResult
from govkit.pipeline.observability import PipelineLayer, Span, Tracer, get_logger, get_tracer
from govkit.pipeline.ports import Ports, ProposalHandle
from govkit.pipeline.resilience import CancellationToken, PollPolicy, RetryPolicy
from govkit.pipeline.variables import VariableStore


# =============================================================================
# REPORTS
# =============================================================================

@dataclass
class ErrorRecord:
    """One error observed while driving a migration."""
    kind: str
    message: str
    stage: str
    fatal: bool

    @classmethod
    def from_error(cls, error: GovkitError, stage: str) -> "ErrorRecord":
        return cls(kind=error.kind, message=str(error), stage=stage, fatal=error.fatal)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "stage": self.stage,
            "fatal": self.fatal,
        }


@dataclass
class MigrationReport:
    """Outcome of one migration within a run."""
    migration_id: str
    stage: str = MigrationStage.PENDING.value
    handle: Optional[ProposalHandle] = None
    payload_digest: Optional[str] = None
    trace_id: str = ""
    verification: Optional[VerificationResult] = None
    errors: List[ErrorRecord] = field(default_factory=list)
    polls: int = 0
    duration_ms: float = 0.0
    skipped: bool = False
    halts_run: bool = False

    @property
    def status(self) -> str:
        return "skipped" if self.skipped else self.stage

    @property
    def succeeded(self) -> bool:
        return self.stage == MigrationStage.VERIFIED.value

    @property
    def timed_out(self) -> bool:
        return any(e.kind == EnactmentTimeout.__name__ for e in self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "status": self.status,
            "stage": self.stage,
            "handle": self.handle.to_dict() if self.handle else None,
            "payload_digest": self.payload_digest,
            "trace_id": self.trace_id,
            "verification": self.verification.to_dict() if self.verification else None,
            "errors": [e.to_dict() for e in self.errors],
            "polls": self.polls,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class RunReport:
    """Outcome of a batch run."""
    started_at: str = field(default_factory=now_iso8601)
    finished_at: Optional[str] = None
    migrations: List[MigrationReport] = field(default_factory=list)
    halted_by: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return bool(self.migrations) and all(m.succeeded for m in self.migrations)

    @property
    def halted(self) -> bool:
        return self.halted_by is not None

    def get(self, migration_id: str) -> Optional[MigrationReport]:
        for report in self.migrations:
            if report.migration_id == migration_id:
                return report
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "succeeded": self.succeeded,
            "halted_by": self.halted_by,
            "migrations": [m.to_dict() for m in self.migrations],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


# =============================================================================
# RUNNER
# =============================================================================

class Runner:
    """
    Runs migrations sequentially against one set of ports.

    Example:
        runner = Runner(ports, poll_policy=PollPolicy(timeout_seconds=7200))
        report = runner.run([ChangeFeedsToApi3(...), RaiseSupplyCap(...)])
        print(report.to_yaml())

    A migration that timed out waiting for enactment stays AWAITING; pass it
    to resume() later to poll and verify without resubmitting.
    """

    def __init__(
        self,
        ports: Ports,
        store: Optional[VariableStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        poll_policy: Optional[PollPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        cancel: Optional[CancellationToken] = None,
        tracer: Optional[Tracer] = None,
        config: Optional[GovkitConfig] = None,
    ):
        self.cancel = cancel or CancellationToken()
        self._sleep = sleep or self._wait
        self._clock = clock
        self.store = store if store is not None else VariableStore()
        self.retry_policy = retry_policy or RetryPolicy.from_config(config, sleep=self._sleep)
        if self.retry_policy.cancel is None:
            self.retry_policy.cancel = self.cancel
        self.poll_policy = poll_policy or PollPolicy.from_config(config)
        self.ports = ports.with_retry(self.retry_policy)
        self.tracer = tracer or get_tracer(config)
        self._log = get_logger("runner", PipelineLayer.RUNNER)

    def _wait(self, seconds: float) -> None:
        self.cancel.wait(seconds)

    def run(self, migrations: Iterable[Migration]) -> RunReport:
        """Run each migration in order; a halting error skips the rest."""
        report = RunReport()
        for migration in migrations:
            if report.halted:
                report.migrations.append(MigrationReport(
                    migration_id=migration.migration_id,
                    stage=migration.stage.value,
                    skipped=True,
                ))
                self._log.warning(
                    f"Skipping {migration.migration_id}",
                    operation="run",
                    halted_by=report.halted_by,
                )
                continue

            result = self.run_one(migration)
            report.migrations.append(result)
            if result.halts_run:
                report.halted_by = migration.migration_id

        report.finished_at = now_iso8601()
        self._log.info(
            f"Run finished: {sum(m.succeeded for m in report.migrations)}"
            f"/{len(report.migrations)} verified",
            operation="run",
            halted_by=report.halted_by,
        )
        return report

    def resume(self, migration: Migration) -> MigrationReport:
        """Poll and verify a migration whose proposal was already submitted."""
        if migration.stage not in {MigrationStage.AWAITING, MigrationStage.APPLIED}:
            raise StageOrderError(migration.migration_id, migration.stage.value, "resume")
        return self.run_one(migration)

    def run_one(self, migration: Migration) -> MigrationReport:
        """Drive one migration from its current stage as far as it goes."""
        report = MigrationReport(migration_id=migration.migration_id)
        if migration.store is None:
            migration.store = self.store

        with self.tracer.trace(migration.migration_id) as trace_id:
            report.trace_id = trace_id
            started = self._clock()
            try:
                with self.tracer.span("migration", migration.stage.value) as span:
                    self._drive(migration, report)
                    span.set_attribute("final_stage", migration.stage.value)
            except GovkitError as e:
                self._record_error(migration, report, e)
            finally:
                report.duration_ms = (self._clock() - started) * 1000
                report.stage = migration.stage.value
                report.handle = migration.handle
                report.payload_digest = migration.payload_digest
                report.verification = migration.result
                if migration.is_complete:
                    migration.store.discard(migration.migration_id)
        return report

    def _record_error(self, migration: Migration, report: MigrationReport, error: GovkitError) -> None:
        stage = migration.stage.value
        report.errors.append(ErrorRecord.from_error(error, stage))
        if error.fatal:
            migration.fail(f"{error.kind}: {error}")
        if error.halts_run:
            report.halts_run = True

        if error.fatal:
            self._log.error(
                f"{migration.migration_id} failed in stage {stage}: {error}",
                error_code=error.kind,
                operation="run_one",
            )
        else:
            self._log.warning(
                f"{migration.migration_id} stopped in stage {stage}: {error}",
                error_code=error.kind,
                operation="run_one",
            )

    def _drive(self, migration: Migration, report: MigrationReport) -> None:
        if migration.stage == MigrationStage.PENDING:
            self.cancel.raise_if_cancelled("prepare")
            with self.tracer.span("prepare", migration.stage.value) as span:
                vars = migration.prepare(self.ports, self.cancel)
                span.set_attribute("vars_digest", vars.digest)

        vars = migration.vars

        if migration.stage == MigrationStage.PREPARED:
            self.cancel.raise_if_cancelled("enact")
            with self.tracer.span("enact", migration.stage.value) as span:
                handle = migration.enact(self.ports, vars, self.cancel)
                span.set_attribute("proposal_id", handle.proposal_id if handle else None)
                span.set_attribute("payload_digest", migration.payload_digest)

        if migration.stage == MigrationStage.AWAITING:
            with self.tracer.span("poll", migration.stage.value) as span:
                self._await_enactment(migration, report, span)

        if migration.stage == MigrationStage.APPLIED:
            self.cancel.raise_if_cancelled("verify")
            with self.tracer.span("verify", migration.stage.value) as span:
                result = migration.verify(self.ports, vars)
                for check in result.checks:
                    span.record_event("check", name=check.name, passed=check.passed)
            mismatch = result.mismatch()
            if mismatch is not None:
                report.errors.append(ErrorRecord.from_error(mismatch, "verify"))

    def _await_enactment(self, migration: Migration, report: MigrationReport, span: Span) -> None:
        """Poll enacted() until true; EnactmentTimeout once the schedule runs out."""
        intervals = self.poll_policy.intervals()
        waited = 0.0
        while True:
            self.cancel.raise_if_cancelled("poll")
            report.polls += 1
            applied = migration.enacted(self.ports)
            span.record_event("poll", attempt=report.polls, applied=applied, waited=waited)
            if applied:
                return

            step = next(intervals, None)
            if step is None:
                raise EnactmentTimeout(migration.migration_id, report.polls, waited)

            self._log.debug(
                f"{migration.migration_id} not yet enacted, next poll in {step:.1f}s",
                operation="poll",
                polls=report.polls,
            )
            self._sleep(step)
            waited += step
