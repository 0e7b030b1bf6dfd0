"""
Tests for the capability ports and their in-memory implementations.
"""
import pytest

from conftest import COMET, CONFIGURATOR, WETH
from govkit.pipeline.encoding import Operation, RoutingMetadata, encode_payload
from govkit.pipeline.errors import (
    NotFoundError,
    OracleError,
    ProvisionError,
    RelayError,
    RetryExhaustedError,
    TransportError,
)
from govkit.pipeline.ports import (
    InMemoryOracle,
    InMemoryProvisioner,
    InMemoryRelay,
    Ports,
    ProposalState,
    ResourceSpec,
    RetryingOracle,
    RetryingProvisioner,
    RetryingRelay,
)
from govkit.pipeline.resilience import RetryPolicy

FEED = "0x1111111111111111111111111111111111111111"


def _payload(registry, feed=FEED):
    ops = [Operation(CONFIGURATOR, "updateAssetPriceFeed", (COMET, WETH, feed))]
    return encode_payload(ops, RoutingMetadata("mainnet", 100_000), registry)


def _no_sleep_policy(max_attempts=3):
    return RetryPolicy(max_attempts=max_attempts, base_delay_seconds=0, sleep=lambda s: None)


class FlakyOracle(InMemoryOracle):
    """Oracle whose first ``failures`` reads raise TransportError."""

    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.calls = 0

    def read(self, target, field):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransportError("connection reset")
        return super().read(target, field)


class TestInMemoryProvisioner:

    def test_ensure_is_idempotent(self):
        prov = InMemoryProvisioner()
        spec = ResourceSpec(kind="price_feed", alias="api3-weth", args=(WETH,))
        first = prov.ensure(spec)
        second = prov.ensure(spec)
        assert first == second
        assert prov.creations == 1
        assert prov.describe(first)["alias"] == "api3-weth"

    def test_handles_are_address_like_and_stable(self):
        a = InMemoryProvisioner().ensure(ResourceSpec(kind="price_feed", alias="f"))
        b = InMemoryProvisioner().ensure(ResourceSpec(kind="price_feed", alias="f"))
        assert a == b
        assert a.startswith("0x") and len(a) == 42

    def test_lookup_of_existing(self, provisioner):
        spec = ResourceSpec(kind="contract", alias="comet", create=False)
        assert provisioner.ensure(spec) == COMET
        assert provisioner.creations == 0

    def test_unresolved_dependency(self):
        prov = InMemoryProvisioner()
        with pytest.raises(ProvisionError, match="Unresolved"):
            prov.ensure(ResourceSpec(kind="contract", alias="comet", create=False))

    def test_kind_conflict(self, provisioner):
        with pytest.raises(ProvisionError):
            provisioner.ensure(ResourceSpec(kind="price_feed", alias="comet"))

    def test_args_conflict(self):
        prov = InMemoryProvisioner()
        prov.ensure(ResourceSpec(kind="price_feed", alias="f", args=(1,)))
        with pytest.raises(ProvisionError):
            prov.ensure(ResourceSpec(kind="price_feed", alias="f", args=(2,)))

    def test_spec_requires_alias(self):
        with pytest.raises(ProvisionError):
            ResourceSpec(kind="contract", alias="")

    def test_describe_unknown(self):
        with pytest.raises(NotFoundError):
            InMemoryProvisioner().describe("0x" + "0" * 40)


class TestInMemoryRelay:

    def test_submit_and_execute(self, registry, oracle):
        relay = InMemoryRelay(on_execute=oracle.apply)
        handle = relay.submit(_payload(registry), "mainnet", 100_000)
        assert relay.state(handle) == ProposalState.PENDING

        relay.execute(handle)
        assert relay.state(handle) == ProposalState.EXECUTED
        with pytest.raises(RelayError, match="already"):
            relay.execute(handle)

    def test_identical_payload_reuses_handle(self, registry):
        relay = InMemoryRelay()
        a = relay.submit(_payload(registry), "mainnet", 100_000)
        b = relay.submit(_payload(registry), "mainnet", 100_000)
        c = relay.submit(_payload(registry, feed="0x" + "3" * 40), "mainnet", 100_000)
        assert a == b
        assert c.proposal_id != a.proposal_id
        assert len(relay.proposals) == 2

    @pytest.mark.parametrize("state", [
        ProposalState.DEFEATED,
        ProposalState.CANCELED,
        ProposalState.EXPIRED,
    ])
    def test_resubmitting_after_failed_proposal_opens_a_new_one(self, registry, state):
        relay = InMemoryRelay()
        first = relay.submit(_payload(registry), "mainnet", 100_000)
        relay.set_state(first, state)

        second = relay.submit(_payload(registry), "mainnet", 100_000)
        assert second.proposal_id != first.proposal_id
        assert relay.state(second) == ProposalState.PENDING
        assert relay.submit(_payload(registry), "mainnet", 100_000) == second

    def test_executed_proposal_is_still_reused(self, registry):
        relay = InMemoryRelay()
        first = relay.submit(_payload(registry), "mainnet", 100_000)
        relay.execute(first)
        assert relay.submit(_payload(registry), "mainnet", 100_000) == first

    def test_rejects_malformed_payload(self, registry):
        payload = _payload(registry)
        broken = type(payload)(data=b"{}", routing=payload.routing, operation_count=1)
        with pytest.raises(RelayError, match="Malformed"):
            InMemoryRelay().submit(broken, "mainnet", 1)

    def test_rejects_unknown_destination(self, registry):
        relay = InMemoryRelay(destinations={"base"})
        with pytest.raises(RelayError, match="destination"):
            relay.submit(_payload(registry), "mainnet", 1)

    def test_rejects_unauthorized(self, registry):
        with pytest.raises(RelayError, match="authorized"):
            InMemoryRelay(authorized=False).submit(_payload(registry), "mainnet", 1)

    def test_reject_next(self, registry):
        relay = InMemoryRelay()
        relay.reject_next()
        with pytest.raises(RelayError):
            relay.submit(_payload(registry), "mainnet", 1)
        assert relay.submit(_payload(registry), "mainnet", 1).proposal_id == "1"

    def test_unknown_proposal(self, registry):
        relay = InMemoryRelay()
        handle = relay.submit(_payload(registry), "mainnet", 1)
        with pytest.raises(RelayError, match="Unknown proposal"):
            InMemoryRelay().state(handle)


class TestInMemoryOracle:

    def test_read(self):
        oracle = InMemoryOracle({(COMET, "totalSupply"): 10})
        assert oracle.read(COMET.lower(), "totalSupply") == 10
        with pytest.raises(NotFoundError):
            oracle.read(COMET, "totalBorrow")

    def test_effects_apply_executed_operations(self, registry):
        oracle = InMemoryOracle()
        oracle.on(
            "updateAssetPriceFeed",
            lambda state, op: state.set(op.args[0], f"priceFeed:{op.args[1]}", op.args[2]),
        )
        relay = InMemoryRelay(on_execute=oracle.apply)
        relay.execute(relay.submit(_payload(registry), "mainnet", 1))
        assert oracle.read(COMET, f"priceFeed:{WETH.lower()}") == FEED


class TestRetryingAdapters:

    def test_transient_failures_are_retried(self):
        inner = FlakyOracle(failures=2, state={(COMET, "x"): 1})
        oracle = RetryingOracle(inner, _no_sleep_policy(3))
        assert oracle.read(COMET, "x") == 1
        assert inner.calls == 3

    def test_exhaustion_raises_domain_error(self):
        inner = FlakyOracle(failures=10)
        oracle = RetryingOracle(inner, _no_sleep_policy(3))
        with pytest.raises(OracleError) as exc:
            oracle.read(COMET, "x")
        assert inner.calls == 3
        assert isinstance(exc.value.__cause__, RetryExhaustedError)

    def test_domain_errors_are_not_retried(self):
        inner = FlakyOracle(failures=0)
        oracle = RetryingOracle(inner, _no_sleep_policy(3))
        with pytest.raises(NotFoundError):
            oracle.read(COMET, "x")
        assert inner.calls == 1

    def test_relay_rejection_is_not_retried(self, registry):
        inner = InMemoryRelay()
        inner.reject_next()
        relay = RetryingRelay(inner, _no_sleep_policy(3))
        with pytest.raises(RelayError):
            relay.submit(_payload(registry), "mainnet", 1)
        assert inner.submissions == 1

    @pytest.mark.parametrize("failures", [1, 2, 4])
    def test_relay_succeeds_after_transient_failures(self, registry, failures):
        inner = InMemoryRelay()
        for _ in range(failures):
            inner.reject_next(TransportError("gateway timeout"))
        relay = RetryingRelay(inner, _no_sleep_policy(failures + 1))

        handle = relay.submit(_payload(registry), "mainnet", 1)
        assert inner.submissions == failures + 1
        assert relay.state(handle) == ProposalState.PENDING
        assert len(inner.proposals) == 1

    def test_relay_exhaustion_reports_attempts(self, registry):
        inner = InMemoryRelay()
        for _ in range(3):
            inner.reject_next(TransportError("timeout"))
        relay = RetryingRelay(inner, _no_sleep_policy(3))
        with pytest.raises(RelayError) as exc:
            relay.submit(_payload(registry), "mainnet", 1)
        assert exc.value.attempts == 3
        assert inner.submissions == 3

    def test_provisioner_exhaustion(self):
        class Down(InMemoryProvisioner):
            def ensure(self, spec):
                raise TransportError("rpc down")

        prov = RetryingProvisioner(Down(), _no_sleep_policy(2))
        with pytest.raises(ProvisionError):
            prov.ensure(ResourceSpec(kind="contract", alias="comet"))

    def test_with_retry_does_not_double_wrap(self, ports):
        policy = _no_sleep_policy(2)
        wrapped = ports.with_retry(policy).with_retry(policy)
        assert isinstance(wrapped, Ports)
        assert wrapped.oracle.inner is ports.oracle
        assert wrapped.relay.inner is ports.relay
