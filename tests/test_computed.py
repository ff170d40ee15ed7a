"""Tests for computed values."""

import pytest

from troza import CircularComputedError, Store, create_store


class TestComputed:
    def test_derived_from_state(self):
        store = create_store({
            "count": 5,
            "computed": {
                "doubled": lambda self: self.count * 2,
                "tripled": lambda self: self["count"] * 3,
            },
        })
        assert store.get().doubled == 10
        assert store.get()["tripled"] == 15

    def test_lazy_eval(self):
        calls = 0

        def doubled(self):
            nonlocal calls
            calls += 1
            return self.count * 2

        store = create_store({"count": 1, "computed": {"doubled": doubled}})
        assert calls == 0  # not yet evaluated
        assert store.get().doubled == 2
        assert calls == 1

    def test_cached_until_a_dependency_changes(self):
        calls = 0

        def doubled(self):
            nonlocal calls
            calls += 1
            return self.count * 2

        store = create_store({"count": 5, "name": "test", "computed": {"doubled": doubled}})
        assert store.get().doubled == 10
        assert store.get().doubled == 10
        assert calls == 1

        store.set(lambda prev: {**prev, "count": 10})
        assert store.get().doubled == 20
        assert calls == 2

        store.set(lambda prev: {**prev, "name": "updated"})
        assert store.get().doubled == 20
        assert calls == 2

    def test_dependency_tracking_is_dynamic(self):
        store = create_store({
            "flag": True,
            "a": 1,
            "b": 2,
            "computed": {"picked": lambda self: self.a if self.flag else self.b},
        })
        assert store.get().picked == 1
        store.patch({"flag": False})
        assert store.get().picked == 2
        store.patch({"a": 100})
        assert store.get().picked == 2
        store.patch({"b": 3})
        assert store.get().picked == 3

    def test_chained_computed(self):
        store = create_store({
            "count": 2,
            "computed": {
                "doubled": lambda self: self.count * 2,
                "quadrupled": lambda self: self.doubled * 2,
            },
        })
        assert store.get().doubled == 4
        assert store.get().quadrupled == 8
        store.set({"count": 3})
        assert store.get().doubled == 6
        assert store.get().quadrupled == 12

    def test_multi_level_dependencies(self):
        calls = {"active": 0, "total": 0}

        def active(self):
            calls["active"] += 1
            return [item for item in self["items"] if item["active"]]

        def total(self):
            calls["total"] += 1
            return sum(item["value"] for item in self.active) * self.multiplier

        store = create_store({
            "items": [{"value": 10, "active": True}, {"value": 20, "active": False}],
            "multiplier": 2,
            "label": "x",
            "computed": {"active": active, "total": total},
        })
        first_active = store.get().active
        assert store.get().total == 20

        store.patch({"label": "y"})
        assert store.get().total == 20
        assert store.get().active is first_active
        assert calls == {"active": 1, "total": 1}

        store.patch({"multiplier": 3})
        assert store.get().total == 30
        assert calls == {"active": 1, "total": 2}

        def activate_second(state):
            state["items"][1]["active"] = True

        store.update(activate_second)
        assert store.get().total == 90
        assert calls == {"active": 2, "total": 3}

    def test_returned_state_object_is_an_identity_dependency(self):
        store = create_store({
            "user": {"name": "a"},
            "other": 1,
            "computed": {"profile": lambda self: self.user},
        })
        first = store.get().profile
        assert first is store.get().raw["user"]

        store.patch({"other": 2})
        assert store.get().profile is first

        store.patch({"user": {"name": "a"}})
        assert store.get().profile is not first
        assert store.get().profile == {"name": "a"}

    def test_old_snapshot_keeps_its_values(self):
        store = create_store({"count": 1, "computed": {"doubled": lambda self: self.count * 2}})
        old = store.get()
        assert old.doubled == 2
        store.set({"count": 2})
        assert old.doubled == 2
        assert store.get().doubled == 4

    def test_stale_evaluation_does_not_replace_the_shared_entry(self):
        calls = 0

        def doubled(self):
            nonlocal calls
            calls += 1
            return self.count * 2

        store = create_store({"count": 1, "name": "a", "computed": {"doubled": doubled}})
        old = store.get()
        store.patch({"count": 2})
        assert store.get().doubled == 4
        assert old.doubled == 2
        assert calls == 2

        store.patch({"name": "b"})
        assert store.get().doubled == 4
        assert calls == 2

    def test_circular_definition_raises(self):
        store = create_store({
            "computed": {"a": lambda self: self.b, "b": lambda self: self.a},
        })
        with pytest.raises(CircularComputedError, match="a -> b -> a"):
            store.get().a
        with pytest.raises(CircularComputedError):
            store.get().b

    def test_self_reference_raises(self):
        store = create_store({"computed": {"loop": lambda self: self.loop + 1}})
        with pytest.raises(CircularComputedError):
            store.get().loop


class TestSnapshot:
    def test_iteration_includes_computed_names(self):
        store = create_store({"count": 1, "computed": {"doubled": lambda self: self.count * 2}})
        snapshot = store.get()
        assert list(snapshot) == ["count", "doubled"]
        assert dict(snapshot) == {"count": 1, "doubled": 2}
        assert len(snapshot) == 2
        assert "doubled" in snapshot
        assert "missing" not in snapshot

    def test_missing_names(self):
        snapshot = Store({"count": 1}).get()
        with pytest.raises(KeyError):
            snapshot["missing"]
        with pytest.raises(AttributeError):
            snapshot.missing
        assert snapshot.get("missing", 0) == 0

    def test_raw_excludes_computed(self):
        store = Store({"count": 1}, computed={"doubled": lambda self: self.count * 2})
        assert store.get().raw == {"count": 1}

    def test_computed_can_iterate_state(self):
        store = create_store({
            "a": 1,
            "b": 2,
            "computed": {"names": lambda self: sorted(k for k in self if k != "names")},
        })
        assert store.get()["names"] == ["a", "b"]
