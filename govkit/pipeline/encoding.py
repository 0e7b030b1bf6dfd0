"""
govkit Payload Encoding

Builds the opaque, self-describing byte payload that carries a batch of remote
operations to another execution domain.

Payload Document (govkit.payload/1):

    {
      "format": "govkit.payload/1",
      "routing": {"destination": "...", "budget": 500000, "description": "..."},
      "operations": [
        {
          "target": "0x...",
          "signature": "updateAssetPriceFeed(address,address,address)",
          "selector": "0x1a2b3c4d",
          "args": [{"type": "address", "value": "0x..."}, ...]
        }
      ]
    }

The document is serialized as canonical JSON (sorted keys, no whitespace,
integers as decimal strings), so the same operations and routing metadata
always produce the same bytes. Every argument carries its type, so a payload
can be decoded without the interface registry that produced it.

Validation is strict: unknown targets, unknown selectors, arity mismatches and
values that do not fit their declared type raise EncodingError before any byte
is produced.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from jsonschema import Draft202012Validator

from govkit.core import PACKAGE_ROOT, canonical_json_bytes, load_json, sha256_bytes
from govkit.pipeline.errors import EncodingError


PAYLOAD_FORMAT = "govkit.payload/1"
PAYLOAD_SCHEMA_PATH = PACKAGE_ROOT / "schemas" / "payload.schema.json"

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
HEX_PATTERN = re.compile(r"^0x([0-9a-fA-F]{2})*$")
SIGNATURE_PATTERN = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\((.*)\)$")
_SIZED_TYPE_PATTERN = re.compile(r"^(uint|int|bytes)(\d+)$")

MAX_BUDGET = 2 ** 64 - 1


# =============================================================================
# ABI TYPES
# =============================================================================

def _check_type_name(type_name: str) -> str:
    """Validate a parameter type name, returning it unchanged."""
    base = type_name[:-2] if type_name.endswith("[]") else type_name
    if base.endswith("[]"):
        raise EncodingError(f"Nested arrays are not supported: {type_name}")
    if base in ("address", "bool", "string", "bytes"):
        return type_name
    m = _SIZED_TYPE_PATTERN.match(base)
    if m:
        kind, size = m.group(1), int(m.group(2))
        if kind == "bytes" and 1 <= size <= 32:
            return type_name
        if kind in ("uint", "int") and size % 8 == 0 and 8 <= size <= 256:
            return type_name
    raise EncodingError(f"Unsupported parameter type: {type_name}")


def _normalize_value(type_name: str, value: Any, where: str) -> Any:
    """Check ``value`` against ``type_name`` and return its canonical form."""
    if type_name.endswith("[]"):
        if not isinstance(value, (list, tuple)):
            raise EncodingError(f"{where}: expected sequence for {type_name}")
        inner = type_name[:-2]
        return [
            _normalize_value(inner, item, f"{where}[{i}]")
            for i, item in enumerate(value)
        ]

    if type_name == "address":
        if not isinstance(value, str) or not ADDRESS_PATTERN.match(value):
            raise EncodingError(f"{where}: invalid address {value!r}")
        return value.lower()

    if type_name == "bool":
        if not isinstance(value, bool):
            raise EncodingError(f"{where}: expected bool, got {type(value).__name__}")
        return value

    if type_name == "string":
        if not isinstance(value, str):
            raise EncodingError(f"{where}: expected string, got {type(value).__name__}")
        return value

    m = _SIZED_TYPE_PATTERN.match(type_name)
    if type_name == "bytes" or (m and m.group(1) == "bytes"):
        if isinstance(value, (bytes, bytearray)):
            raw = bytes(value)
        elif isinstance(value, str) and HEX_PATTERN.match(value):
            raw = bytes.fromhex(value[2:])
        else:
            raise EncodingError(f"{where}: expected bytes or 0x hex, got {value!r}")
        if m and len(raw) != int(m.group(2)):
            raise EncodingError(f"{where}: {type_name} requires {m.group(2)} bytes, got {len(raw)}")
        return "0x" + raw.hex()

    if m and m.group(1) in ("uint", "int"):
        if isinstance(value, bool) or not isinstance(value, int):
            raise EncodingError(f"{where}: expected integer, got {type(value).__name__}")
        bits = int(m.group(2))
        if m.group(1) == "uint":
            low, high = 0, 2 ** bits - 1
        else:
            low, high = -(2 ** (bits - 1)), 2 ** (bits - 1) - 1
        if not low <= value <= high:
            raise EncodingError(f"{where}: {value} out of range for {type_name}")
        return str(value)

    raise EncodingError(f"{where}: unsupported type {type_name}")


def _restore_value(type_name: str, value: Any) -> Any:
    """Inverse of _normalize_value for decoded documents."""
    if type_name.endswith("[]"):
        return tuple(_restore_value(type_name[:-2], item) for item in value)
    if type_name in ("address", "bool", "string"):
        return value
    if type_name.startswith("bytes"):
        return bytes.fromhex(value[2:])
    return int(value)


def _decode_value(type_name: str, value: Any, where: str) -> Any:
    """Restore a decoded argument and re-check it against its type."""
    _check_type_name(type_name)
    try:
        restored = _restore_value(type_name, value)
    except (TypeError, ValueError) as e:
        raise EncodingError(f"{where}: cannot decode {type_name} value {value!r}") from e
    _normalize_value(type_name, restored, where)
    return restored


# =============================================================================
# SIGNATURES AND INTERFACES
# =============================================================================

@dataclass(frozen=True)
class FunctionSignature:
    """A remote function: name plus ordered parameter types."""
    name: str
    param_types: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "param_types", tuple(self.param_types))
        for t in self.param_types:
            _check_type_name(t)

    @classmethod
    def parse(cls, text: str) -> "FunctionSignature":
        """Parse ``name(type1,type2)``."""
        m = SIGNATURE_PATTERN.match(text.replace(" ", ""))
        if not m:
            raise EncodingError(f"Malformed function signature: {text!r}")
        params = m.group(2)
        types = tuple(p for p in params.split(",")) if params else ()
        return cls(name=m.group(1), param_types=types)

    @property
    def text(self) -> str:
        return f"{self.name}({','.join(self.param_types)})"

    @property
    def selector(self) -> str:
        """First four bytes of the SHA-256 of the signature text."""
        return "0x" + sha256_bytes(self.text.encode("utf-8"))[:8]

    @property
    def arity(self) -> int:
        return len(self.param_types)


@dataclass
class Interface:
    """Named set of functions a target exposes, keyed by function name."""
    name: str
    functions: Dict[str, FunctionSignature] = field(default_factory=dict)

    @classmethod
    def from_signatures(cls, name: str, signatures: Iterable[str]) -> "Interface":
        iface = cls(name=name)
        for text in signatures:
            iface.add(FunctionSignature.parse(text))
        return iface

    def add(self, signature: FunctionSignature) -> None:
        existing = self.functions.get(signature.name)
        if existing is not None and existing != signature:
            raise EncodingError(
                f"{self.name}.{signature.name} already declared as {existing.text}"
            )
        self.functions[signature.name] = signature

    def function(self, selector: str) -> FunctionSignature:
        """Resolve a selector given as a function name or a full signature."""
        name = selector.split("(", 1)[0]
        found = self.functions.get(name)
        if found is None:
            raise EncodingError(f"Unknown selector {selector!r} for {self.name}")
        if "(" in selector and FunctionSignature.parse(selector) != found:
            raise EncodingError(
                f"Selector {selector!r} does not match {self.name}.{found.text}"
            )
        return found


class InterfaceRegistry:
    """
    Maps targets to interfaces.

    A target is either an interface name ("Comet") or a handle bound to an
    interface with bind() ("0xc3d6...", bound to "Comet").
    """

    def __init__(self):
        self._interfaces: Dict[str, Interface] = {}
        self._bindings: Dict[str, str] = {}

    def register(self, interface: Interface) -> Interface:
        self._interfaces[interface.name] = interface
        return interface

    def declare(self, name: str, *signatures: str) -> Interface:
        """Register an interface from signature strings."""
        return self.register(Interface.from_signatures(name, signatures))

    def bind(self, target: str, interface_name: str) -> None:
        if interface_name not in self._interfaces:
            raise EncodingError(f"Unknown interface: {interface_name}")
        self._bindings[_target_key(target)] = interface_name

    def interface_for(self, target: str) -> Interface:
        name = self._bindings.get(_target_key(target), target)
        iface = self._interfaces.get(name)
        if iface is None:
            raise EncodingError(f"Unknown target: {target}")
        return iface

    def resolve(self, target: str, selector: str) -> FunctionSignature:
        return self.interface_for(target).function(selector)

    def __contains__(self, target: object) -> bool:
        if not isinstance(target, str):
            return False
        return _target_key(target) in self._bindings or target in self._interfaces


def _target_key(target: str) -> str:
    return target.lower() if ADDRESS_PATTERN.match(target) else target


# =============================================================================
# OPERATIONS AND PAYLOADS
# =============================================================================

@dataclass(frozen=True)
class Operation:
    """One remote call: target handle, selector and ordered arguments."""
    target: str
    selector: str
    args: Tuple[Any, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "args", tuple(self.args))


@dataclass(frozen=True)
class RoutingMetadata:
    """Where a payload goes and how much remote execution budget it may use."""
    destination: str
    budget: int = 0
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "destination": self.destination,
            "budget": self.budget,
            "description": self.description,
        }


@dataclass(frozen=True)
class Payload:
    """Encoded payload bytes plus the routing metadata they were built with."""
    data: bytes
    routing: RoutingMetadata
    operation_count: int

    @property
    def digest(self) -> str:
        return sha256_bytes(self.data)

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class DecodedPayload:
    """Result of decode_payload()."""
    operations: Tuple[Operation, ...]
    routing: RoutingMetadata
    signatures: Tuple[str, ...]


def _validate_routing(routing: RoutingMetadata) -> None:
    if not isinstance(routing.destination, str) or not routing.destination.strip():
        raise EncodingError("Routing destination must be a non-empty string")
    budget = routing.budget
    if isinstance(budget, bool) or not isinstance(budget, int) or not 0 <= budget <= MAX_BUDGET:
        raise EncodingError(f"Routing budget must be an integer in [0, 2**64): {budget!r}")
    if not isinstance(routing.description, str):
        raise EncodingError("Routing description must be a string")


def _encode_operation(
    index: int,
    op: Operation,
    registry: InterfaceRegistry,
) -> Dict[str, Any]:
    where = f"operations[{index}]"
    if not isinstance(op, Operation):
        raise EncodingError(f"{where}: expected Operation, got {type(op).__name__}")
    if not isinstance(op.target, str) or not op.target:
        raise EncodingError(f"{where}: target must be a non-empty string")
    if not isinstance(op.selector, str) or not op.selector:
        raise EncodingError(f"{where}: selector must be a non-empty string")
    signature = registry.resolve(op.target, op.selector)
    if len(op.args) != signature.arity:
        raise EncodingError(
            f"{where}: {signature.text} takes {signature.arity} argument(s), "
            f"got {len(op.args)}"
        )
    args = [
        {"type": t, "value": _normalize_value(t, v, f"{where}.args[{i}]")}
        for i, (t, v) in enumerate(zip(signature.param_types, op.args))
    ]
    return {
        "target": _target_key(op.target),
        "signature": signature.text,
        "selector": signature.selector,
        "args": args,
    }


def encode_payload(
    operations: Sequence[Operation],
    routing: RoutingMetadata,
    registry: InterfaceRegistry,
) -> Payload:
    """
    Encode an ordered operation sequence plus routing metadata.

    Pure and deterministic: identical inputs produce byte-identical payloads.
    """
    ops = list(operations)
    if not ops:
        raise EncodingError("Payload requires at least one operation")
    _validate_routing(routing)

    document = {
        "format": PAYLOAD_FORMAT,
        "routing": routing.to_dict(),
        "operations": [_encode_operation(i, op, registry) for i, op in enumerate(ops)],
    }
    return Payload(
        data=canonical_json_bytes(document),
        routing=routing,
        operation_count=len(ops),
    )


class PayloadEncoder:
    """Payload encoder bound to an interface registry."""

    def __init__(self, registry: InterfaceRegistry):
        self.registry = registry

    def encode(
        self,
        operations: Sequence[Operation],
        routing: RoutingMetadata,
    ) -> Payload:
        return encode_payload(operations, routing, self.registry)


# =============================================================================
# DECODING
# =============================================================================

@lru_cache(maxsize=1)
def payload_validator() -> Draft202012Validator:
    """Cached validator for the payload document schema."""
    return Draft202012Validator(load_json(PAYLOAD_SCHEMA_PATH))


def validate_payload_document(document: Any) -> List[str]:
    """List of schema violations (empty if valid)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in payload_validator().iter_errors(document)
    ]


def decode_payload(data: bytes) -> DecodedPayload:
    """
    Decode payload bytes back into operations and routing metadata.

    Operations are returned with the function name as selector and argument
    values in their canonical Python form (addresses lower-cased).
    """
    try:
        document = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise EncodingError(f"Payload is not valid JSON: {e}") from e

    errors = validate_payload_document(document)
    if errors:
        raise EncodingError("Malformed payload: " + "; ".join(errors))

    operations: List[Operation] = []
    signatures: List[str] = []
    for i, entry in enumerate(document["operations"]):
        signature = FunctionSignature.parse(entry["signature"])
        if signature.selector != entry["selector"]:
            raise EncodingError(f"operations[{i}]: selector does not match signature")
        types = [arg["type"] for arg in entry["args"]]
        if tuple(types) != signature.param_types:
            raise EncodingError(f"operations[{i}]: argument types do not match signature")
        args = tuple(
            _decode_value(arg["type"], arg["value"], f"operations[{i}].args[{j}]")
            for j, arg in enumerate(entry["args"])
        )
        operations.append(Operation(target=entry["target"], selector=signature.name, args=args))
        signatures.append(signature.text)

    routing = document["routing"]
    return DecodedPayload(
        operations=tuple(operations),
        routing=RoutingMetadata(
            destination=routing["destination"],
            budget=routing["budget"],
            description=routing.get("description", ""),
        ),
        signatures=tuple(signatures),
    )
