"""
Tests for the variable store.

Verifies that:
1. A variable set is written once and cannot be mutated afterwards.
2. Rewriting an equal set is a no-op; a different set conflicts.
3. Values are validated at write time.
4. Sets of different migrations never alias.
"""
import threading
from decimal import Decimal

import pytest

from govkit.pipeline.errors import VariableConflictError, VariableSetError
from govkit.pipeline.variables import VariableSet, VariableStore, validate_migration_id


class TestVariableSet:
    """Tests for VariableSet."""

    def test_values_are_read_only(self):
        vs = VariableSet("m1", {"comet": "0xabc", "caps": [1, 2]})
        assert vs["comet"] == "0xabc"
        assert vs["caps"] == (1, 2)
        with pytest.raises(TypeError):
            vs["comet"] = "0xdef"  # type: ignore[index]
        with pytest.raises(AttributeError):
            vs._values = {}  # type: ignore[misc]

    def test_rejects_floats(self):
        with pytest.raises(VariableSetError) as exc:
            VariableSet("m1", {"rate": 0.5})
        assert exc.value.field == "rate"

    def test_accepts_decimal(self):
        vs = VariableSet("m1", {"rate": Decimal("0.5")})
        assert vs["rate"] == Decimal("0.5")
        assert vs.to_dict()["values"]["rate"] == "0.5"

    def test_rejects_unsupported_types(self):
        with pytest.raises(VariableSetError):
            VariableSet("m1", {"obj": object()})
        with pytest.raises(VariableSetError):
            VariableSet("m1", {"nested": {"a": 1}})

    def test_rejects_bad_names(self):
        with pytest.raises(VariableSetError):
            VariableSet("m1", {"1bad": 1})
        with pytest.raises(VariableSetError):
            VariableSet("m1", {"has space": 1})

    def test_require_missing(self):
        vs = VariableSet("m1", {})
        with pytest.raises(VariableSetError, match="Missing"):
            vs.require("comet")

    def test_digest_is_content_based(self):
        a = VariableSet("m1", {"x": 1, "y": "z"})
        b = VariableSet("m1", {"y": "z", "x": 1})
        c = VariableSet("m2", {"x": 1, "y": "z"})
        assert a == b
        assert a.digest == b.digest
        assert a.digest != c.digest

    @pytest.mark.parametrize("left, right", [
        (1, True),
        (0, False),
        (Decimal("1.0"), Decimal("1")),
    ])
    def test_equality_distinguishes_types(self, left, right):
        a = VariableSet("m1", {"flag": left})
        b = VariableSet("m1", {"flag": right})
        assert a != b
        assert a.digest != b.digest

    def test_equal_sets_hash_equal(self):
        a = VariableSet("m1", {"cap": Decimal("2.50"), "on": True})
        b = VariableSet("m1", {"on": True, "cap": Decimal("2.50")})
        assert a == b
        assert hash(a) == hash(b)
        assert len({a, b}) == 1


class TestVariableStore:
    """Tests for VariableStore."""

    def test_write_then_read(self):
        store = VariableStore()
        written = store.write("m1", {"comet": "0xabc"})
        assert store.read("m1") is written
        assert "m1" in store
        assert len(store) == 1

    def test_read_before_write_fails(self):
        store = VariableStore()
        assert store.get("m1") is None
        with pytest.raises(VariableSetError):
            store.read("m1")

    def test_equal_rewrite_returns_existing(self):
        store = VariableStore()
        first = store.write("m1", {"comet": "0xabc"})
        second = store.write("m1", {"comet": "0xabc"})
        assert second is first

    def test_different_rewrite_conflicts(self):
        store = VariableStore()
        store.write("m1", {"comet": "0xabc"})
        with pytest.raises(VariableConflictError):
            store.write("m1", {"comet": "0xdef"})
        assert store.read("m1")["comet"] == "0xabc"

    @pytest.mark.parametrize("first, second", [
        (1, True),
        (Decimal("1.0"), Decimal("1")),
    ])
    def test_rewrite_with_differently_typed_value_conflicts(self, first, second):
        store = VariableStore()
        store.write("m1", {"flag": first})
        with pytest.raises(VariableConflictError):
            store.write("m1", {"flag": second})
        assert str(store.read("m1")["flag"]) == str(first)

    def test_sets_do_not_alias(self):
        store = VariableStore()
        source = {"assets": ["0x1"]}
        a = store.write("a", source)
        source["assets"].append("0x2")
        b = store.write("b", source)
        assert a["assets"] == ("0x1",)
        assert b["assets"] == ("0x1", "0x2")

    def test_invalid_values_write_nothing(self):
        store = VariableStore()
        with pytest.raises(VariableSetError):
            store.write("m1", {"rate": 1.5})
        assert "m1" not in store

    def test_discard(self):
        store = VariableStore()
        store.write("m1", {})
        assert store.discard("m1") is True
        assert store.discard("m1") is False
        assert store.migration_ids() == []

    def test_concurrent_writes_keep_one_set(self):
        store = VariableStore()
        results = []
        errors = []

        def write(value):
            try:
                results.append(store.write("m1", {"v": value}))
            except VariableConflictError as e:
                errors.append(e)

        threads = [threading.Thread(target=write, args=(i % 2,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stored = store.read("m1")
        assert all(r is stored for r in results)
        assert len(results) + len(errors) == 20


class TestMigrationId:

    @pytest.mark.parametrize("migration_id", ["1724411762_change_feeds_to_api3", "a.b-c"])
    def test_valid(self, migration_id):
        assert validate_migration_id(migration_id) == migration_id

    @pytest.mark.parametrize("migration_id", ["", "has space", "x" * 129, None, "a/b"])
    def test_invalid(self, migration_id):
        with pytest.raises(VariableSetError):
            validate_migration_id(migration_id)
