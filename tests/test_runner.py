"""
Tests for the Runner.

Verifies that:
1. The poll loop backs off between polls and times out without failing.
2. Halting errors skip the remaining migrations; other fatal errors do not.
3. Transient transport failures are retried inside the run.
4. Every error lands in the report, and the report serialises.
"""
import json

import pytest
import yaml

from conftest import COMET, WETH
from govkit.pipeline.config import get_config_manager
from govkit.pipeline.encoding import Operation
from govkit.pipeline.errors import StageOrderError, TransportError
from govkit.pipeline.migration import Expectation, MigrationStage, define_migration
from govkit.pipeline.observability import Tracer
from govkit.pipeline.ports import InMemoryOracle, Ports, ProposalState, ResourceSpec
from govkit.pipeline.resilience import CancellationToken, PollPolicy, RetryPolicy
from govkit.pipeline.runner import Runner
from govkit.pipeline.variables import VariableStore

FAST_POLL = PollPolicy(
    initial_interval_seconds=1,
    multiplier=2,
    max_interval_seconds=60,
    timeout_seconds=10,
)


def _cap_migration(registry, migration_id="raise_cap", cap=100, **kwargs):
    return define_migration(
        migration_id,
        enact=lambda p, v: [Operation(COMET, "setSupplyCap", (WETH, cap))],
        expectations=lambda p, v: [Expectation("cap", COMET, "supplyCap", cap)],
        registry=registry,
        **kwargs,
    )


def _cap_effect(oracle):
    oracle.on("setSupplyCap", lambda state, op: state.set(op.target, "supplyCap", op.args[1]))


def _runner(ports, sleeps, **kwargs):
    kwargs.setdefault("poll_policy", FAST_POLL)
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, sleep=sleeps.append))
    return Runner(ports, sleep=sleeps.append, **kwargs)


class TestPollLoop:
    """Tests for the enactment poll loop."""

    def test_polls_with_backoff_until_enacted(self, registry, ports, sleeps, oracle):
        _cap_effect(oracle)
        answers = iter([False, False, True])

        def enacted(p, handle):
            done = next(answers)
            if done:
                ports.relay.execute(handle)
            return done

        m = _cap_migration(registry, enacted=enacted)
        report = _runner(ports, sleeps).run([m])

        result = report.get("raise_cap")
        assert result.polls == 3
        assert sleeps == [1, 2]
        assert result.succeeded
        assert report.succeeded

    def test_timeout_is_not_fatal(self, registry, ports, sleeps):
        m = _cap_migration(registry)
        report = _runner(ports, sleeps).run([m])
        result = report.get("raise_cap")

        assert result.timed_out
        assert sleeps == [1, 2, 4]
        assert result.polls == 4
        assert m.stage == MigrationStage.AWAITING
        assert result.errors[0].kind == "EnactmentTimeout"
        assert result.errors[0].fatal is False
        assert not report.succeeded

    def test_resume_after_timeout(self, registry, ports, relay, oracle, sleeps):
        _cap_effect(oracle)
        m = _cap_migration(registry)
        runner = _runner(ports, sleeps)
        runner.run([m])
        assert m.stage == MigrationStage.AWAITING
        assert m.migration_id in runner.store

        relay.execute(m.handle)
        result = runner.resume(m)
        assert result.succeeded
        assert relay.submissions == 1
        assert m.migration_id not in runner.store

    def test_resume_requires_submitted_migration(self, registry, ports, sleeps):
        with pytest.raises(StageOrderError):
            _runner(ports, sleeps).resume(_cap_migration(registry))

    def test_defeated_proposal_fails_migration(self, registry, ports, relay, sleeps):
        m = _cap_migration(registry)
        runner = _runner(ports, sleeps)
        m.store = runner.store
        m.enact(runner.ports, m.prepare(runner.ports))
        relay.set_state(m.handle, ProposalState.DEFEATED)

        result = runner.run_one(m)
        assert m.stage == MigrationStage.FAILED
        assert result.errors[0].kind == "RelayError"
        assert result.errors[0].stage == "awaiting"


class TestErrorPolicy:
    """Tests for halting and continuing after errors."""

    def test_provision_error_halts_batch(self, registry, ports, relay, sleeps):
        broken = define_migration(
            "needs_timelock",
            prepare=lambda p: {"timelock": p.provisioner.ensure(
                ResourceSpec("contract", "timelock", create=False)
            )},
            registry=registry,
        )
        later = _cap_migration(registry, "later")
        report = _runner(ports, sleeps).run([broken, later])

        assert report.halted_by == "needs_timelock"
        first, second = report.migrations
        assert first.stage == "failed"
        assert first.errors[0].kind == "ProvisionError"
        assert second.skipped and second.status == "skipped"
        assert later.stage == MigrationStage.PENDING
        assert relay.submissions == 0

    def test_encoding_error_halts_batch(self, registry, ports, relay, sleeps):
        bad = define_migration(
            "bad_ops",
            enact=lambda p, v: [Operation(COMET, "unknownFunction", ())],
            registry=registry,
        )
        report = _runner(ports, sleeps).run([bad, _cap_migration(registry)])
        assert report.halted
        assert report.migrations[0].errors[0].kind == "EncodingError"
        assert relay.submissions == 0

    def test_submission_error_continues(self, registry, ports, relay, oracle, sleeps):
        _cap_effect(oracle)
        relay.reject_next()
        first = _cap_migration(registry, "first", cap=1)
        second = _cap_migration(
            registry, "second", cap=2,
            enacted=lambda p, h: (ports.relay.execute(h), True)[1],
        )
        report = _runner(ports, sleeps).run([first, second])

        assert not report.halted
        assert report.get("first").errors[0].kind == "SubmissionError"
        assert report.get("first").stage == "failed"
        assert report.get("second").succeeded

    def test_mismatch_is_reported_not_raised(self, registry, ports, sleeps):
        m = _cap_migration(registry, enacted=lambda p, h: True)
        report = _runner(ports, sleeps).run([m])
        result = report.get("raise_cap")

        assert result.stage == "failed"
        assert result.errors[0].kind == "VerificationMismatch"
        assert result.errors[0].fatal is False
        assert result.verification.failures[0].name == "cap"

    def test_cancel_before_run(self, registry, ports, relay, sleeps):
        token = CancellationToken()
        token.cancel("shutdown")
        report = _runner(ports, sleeps, cancel=token).run(
            [_cap_migration(registry, "a"), _cap_migration(registry, "b")]
        )
        assert report.migrations[0].errors[0].kind == "MigrationCancelled"
        assert report.migrations[1].skipped
        assert relay.submissions == 0

    def test_non_govkit_errors_propagate(self, registry, ports, sleeps):
        def explode(p):
            raise KeyError("programmer error")

        with pytest.raises(KeyError):
            _runner(ports, sleeps).run([define_migration("boom", prepare=explode, registry=registry)])


class TestRetries:

    def test_transient_oracle_failures_are_retried(self, registry, provisioner, relay, sleeps):
        class Flaky(InMemoryOracle):
            calls = 0

            def read(self, target, field):
                Flaky.calls += 1
                if Flaky.calls == 1:
                    raise TransportError("503")
                return super().read(target, field)

        oracle = Flaky()
        _cap_effect(oracle)
        relay.on_execute = oracle.apply
        ports = Ports(provisioner, relay, oracle)

        m = _cap_migration(registry, enacted=lambda p, h: (relay.execute(h), True)[1])
        report = _runner(ports, sleeps).run([m])
        assert report.succeeded
        assert Flaky.calls == 2

    def test_cancel_stops_retrying(self, registry, ports, relay, sleeps):
        token = CancellationToken()
        for _ in range(3):
            relay.reject_next(TransportError("connection reset"))
        retry = RetryPolicy(max_attempts=4, sleep=lambda s: token.cancel("operator abort"))

        report = _runner(ports, sleeps, retry_policy=retry, cancel=token).run(
            [_cap_migration(registry)]
        )
        assert relay.submissions == 1
        assert report.halted
        assert report.get("raise_cap").errors[0].kind == "MigrationCancelled"


class TestReport:

    def test_serialises(self, registry, ports, oracle, sleeps):
        _cap_effect(oracle)
        m = _cap_migration(registry, enacted=lambda p, h: (ports.relay.execute(h), True)[1])
        report = _runner(ports, sleeps).run([m])

        d = report.to_dict()
        entry = d["migrations"][0]
        assert entry["status"] == "verified"
        assert entry["handle"]["proposal_id"] == "1"
        assert entry["payload_digest"] == m.payload_digest
        assert entry["verification"]["passed"] is True
        assert json.loads(report.to_json()) == d
        assert yaml.safe_load(report.to_yaml()) == d

    def test_variable_store_is_cleared_after_terminal_stage(self, registry, ports, oracle, sleeps):
        _cap_effect(oracle)
        store = VariableStore()
        m = _cap_migration(registry, enacted=lambda p, h: (ports.relay.execute(h), True)[1])
        _runner(ports, sleeps, store=store).run([m])
        assert len(store) == 0

    def test_clock_measures_duration(self, registry, ports, sleeps, clock):
        def slow_prepare(p):
            clock.advance(2.5)
            return {}

        m = define_migration("timed", prepare=slow_prepare, registry=registry)
        report = _runner(ports, sleeps, clock=clock).run([m])
        assert report.get("timed").duration_ms == 2500.0


class TestTracing:

    def test_each_migration_gets_its_own_trace(self, registry, ports, oracle, sleeps):
        _cap_effect(oracle)
        tracer = Tracer()
        exported = []
        tracer.add_exporter(exported.append)
        enacted = lambda p, h: (ports.relay.execute(h), True)[1]
        first = _cap_migration(registry, "first", enacted=enacted)
        second = _cap_migration(registry, "second", cap=200, enacted=enacted)

        report = _runner(ports, sleeps, tracer=tracer).run([first, second])
        assert report.succeeded

        trace_ids = [report.get("first").trace_id, report.get("second").trace_id]
        assert trace_ids[0] != trace_ids[1]
        roots = [s for s in exported if s.name == "migration"]
        assert [(s.migration_id, s.trace_id) for s in roots] == list(zip(["first", "second"], trace_ids))

        stages = {s.name: s.stage for s in exported if s.migration_id == "first"}
        assert stages == {
            "migration": "pending",
            "prepare": "pending",
            "enact": "prepared",
            "poll": "awaiting",
            "verify": "applied",
        }
        verify = next(s for s in exported if s.name == "verify" and s.migration_id == "first")
        assert [e.attributes for e in verify.events] == [{"name": "cap", "passed": True}]

    def test_poll_events_survive_a_timeout(self, registry, ports, sleeps):
        tracer = Tracer()
        exported = []
        tracer.add_exporter(exported.append)
        _runner(ports, sleeps, tracer=tracer).run([_cap_migration(registry)])

        poll = next(s for s in exported if s.name == "poll")
        assert poll.error.startswith("EnactmentTimeout")
        assert [e.attributes["attempt"] for e in poll.events] == [1, 2, 3, 4]

    def test_tracing_can_be_disabled(self, ports, sleeps):
        get_config_manager().set("observability.enable_tracing", False)
        assert _runner(ports, sleeps).tracer.enabled is False
