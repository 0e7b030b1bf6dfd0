"""
Switch Comet collateral price feeds to API3 feeds.

prepare   ensures one price feed per asset (idempotent) and looks up the
          comet, its configurator and the proxy admin
enact     configurator.updateAssetPriceFeed(comet, asset, feed) per asset,
          then cometAdmin.deployAndUpgradeTo(configurator, comet)
verify    comet reports the new feed for every asset

Deployment addresses and feed aliases are configuration. With no feeds
configured the migration makes no governance changes.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple, Union

from govkit.core import load_yaml
from govkit.pipeline.config import ConfigError
from govkit.pipeline.encoding import ADDRESS_PATTERN, InterfaceRegistry, Operation
from govkit.pipeline.migration import Expectation, Migration
from govkit.pipeline.ports import InMemoryOracle, Ports, ResourceSpec
from govkit.pipeline.variables import VariableSet

MIGRATION_ID = "1724411762_change_feeds_to_api3"

CONFIGURATOR_SIGNATURES = ("updateAssetPriceFeed(address,address,address)",)
COMET_ADMIN_SIGNATURES = ("deployAndUpgradeTo(address,address)",)


def price_feed_field(asset: str) -> str:
    """Oracle field holding the price feed of ``asset`` on a comet."""
    return f"priceFeed:{asset.lower()}"


@dataclass(frozen=True)
class FeedChange:
    """New price feed for one collateral asset."""
    asset: str
    feed_alias: str

    def __post_init__(self):
        if not isinstance(self.asset, str) or not ADDRESS_PATTERN.match(self.asset):
            raise ConfigError(f"Invalid asset address: {self.asset!r}")
        if not self.feed_alias:
            raise ConfigError(f"Missing feed alias for asset {self.asset}")


class ChangeFeedsToApi3(Migration):
    migration_id = MIGRATION_ID
    description = "Change Comet price feeds to API3"

    def __init__(
        self,
        feeds: Sequence[FeedChange] = (),
        domain: str = "",
        **kwargs: Any,
    ):
        self.feeds: Tuple[FeedChange, ...] = tuple(feeds)
        self.domain = domain
        super().__init__(**kwargs)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], **kwargs: Any) -> "ChangeFeedsToApi3":
        """
        Build from a mapping such as::

            domain: base
            feeds:
              - asset: "0x4200000000000000000000000000000000000006"
                feed: api3-weth-usd
        """
        if not isinstance(data, Mapping):
            raise ConfigError("Migration settings must be a mapping")
        unknown = set(data) - {"domain", "feeds"}
        if unknown:
            raise ConfigError(f"Unknown migration settings: {sorted(unknown)}")
        feeds: List[FeedChange] = []
        for i, entry in enumerate(data.get("feeds") or []):
            if not isinstance(entry, Mapping) or "asset" not in entry or "feed" not in entry:
                raise ConfigError(f"feeds[{i}] requires 'asset' and 'feed'")
            feeds.append(FeedChange(asset=entry["asset"], feed_alias=str(entry["feed"])))
        return cls(feeds=feeds, domain=str(data.get("domain", "")), **kwargs)

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs: Any) -> "ChangeFeedsToApi3":
        return cls.from_dict(load_yaml(Path(path)) or {}, **kwargs)

    def declare_interfaces(self, registry: InterfaceRegistry) -> None:
        registry.declare("Configurator", *CONFIGURATOR_SIGNATURES)
        registry.declare("CometProxyAdmin", *COMET_ADMIN_SIGNATURES)

    def _lookup(self, alias: str) -> ResourceSpec:
        return ResourceSpec(kind="contract", alias=alias, domain=self.domain, create=False)

    def provision(self, ports: Ports) -> Mapping[str, Any]:
        if not self.feeds:
            return {}

        values: Dict[str, Any] = {
            "comet": ports.provisioner.ensure(self._lookup("comet")),
            "configurator": ports.provisioner.ensure(self._lookup("configurator")),
            "cometAdmin": ports.provisioner.ensure(self._lookup("cometAdmin")),
        }
        assets = []
        feeds = []
        for change in self.feeds:
            assets.append(change.asset.lower())
            feeds.append(ports.provisioner.ensure(ResourceSpec(
                kind="price_feed",
                alias=change.feed_alias,
                args=(change.asset.lower(),),
                domain=self.domain,
            )))
        values["assets"] = assets
        values["feeds"] = feeds
        return values

    def operations(self, ports: Ports, vars: VariableSet) -> Sequence[Operation]:
        if not vars:
            return []

        comet = vars["comet"]
        configurator = vars["configurator"]
        self.registry.bind(configurator, "Configurator")
        self.registry.bind(vars["cometAdmin"], "CometProxyAdmin")

        ops = [
            Operation(configurator, "updateAssetPriceFeed", (comet, asset, feed))
            for asset, feed in zip(vars["assets"], vars["feeds"])
        ]
        ops.append(Operation(vars["cometAdmin"], "deployAndUpgradeTo", (configurator, comet)))
        return ops

    def expectations(self, ports: Ports, vars: VariableSet) -> Sequence[Expectation]:
        if not vars:
            return []
        return [
            Expectation(
                name=f"price feed of {asset}",
                target=vars["comet"],
                field=price_feed_field(asset),
                expected=feed,
            )
            for asset, feed in zip(vars["assets"], vars["feeds"])
        ]


def register_effects(oracle: InMemoryOracle) -> None:
    """
    Teach an in-memory oracle what this migration's proposal does once
    executed, for dry runs against in-memory ports.
    """
    def update_asset_price_feed(state: InMemoryOracle, op: Operation) -> None:
        comet, asset, feed = op.args
        state.set(comet, price_feed_field(asset), feed)

    oracle.on("updateAssetPriceFeed", update_asset_price_feed)
