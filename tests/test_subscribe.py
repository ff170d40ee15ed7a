"""Tests for store.subscribe()."""

import logging

import pytest

from troza import create_store


class TestSubscribe:
    def test_called_with_snapshot_and_previous(self):
        store = create_store({"count": 0})
        calls = []
        store.subscribe(lambda state, prev: calls.append((state, prev)))
        first = store.get()
        store.patch({"count": 1})
        assert calls == [(store.get(), first)]
        assert calls[0][0]["count"] == 1
        assert calls[0][1]["count"] == 0

    def test_selector_fires_only_on_change(self):
        store = create_store({"count": 0, "other": 0})
        changes = []
        store.subscribe(lambda state: state["count"], lambda value, prev: changes.append((value, prev)))
        store.patch({"other": 1})
        assert changes == []
        store.patch({"count": 5})
        assert changes == [(5, 0)]

    def test_selector_is_memoized_on_read_paths(self):
        store = create_store({"todos": [{"title": "a", "done": True}], "label": "x"})
        changes = []
        store.subscribe(
            lambda state: [todo["title"] for todo in state["todos"] if todo["done"]],
            lambda value, prev: changes.append(value),
        )
        store.patch({"label": "y"})
        assert changes == []  # fresh list, but the todos it read are unchanged

        store.update(lambda state: state["todos"].append({"title": "b", "done": True}))
        assert changes == [["a", "b"]]

    def test_selector_over_computed(self):
        store = create_store({
            "count": 1,
            "other": 0,
            "computed": {"doubled": lambda self: self.count * 2},
        })
        changes = []
        store.subscribe(lambda state: state.doubled, lambda value, prev: changes.append((value, prev)))
        store.patch({"other": 1})
        store.patch({"count": 2})
        assert changes == [(4, 2)]

    def test_unsubscribe(self):
        store = create_store({"count": 0})
        calls = []
        unsubscribe = store.subscribe(lambda state, prev: calls.append(state["count"]))
        store.patch({"count": 1})
        unsubscribe()
        store.patch({"count": 2})
        assert calls == [1]
        unsubscribe()  # idempotent

    def test_registration_order(self):
        store = create_store({"count": 0})
        order = []
        store.subscribe(lambda state, prev: order.append("first"))
        store.subscribe(lambda state: state["count"], lambda value, prev: order.append("second"))
        store.subscribe(lambda state, prev: order.append("third"))
        store.patch({"count": 1})
        assert order == ["first", "second", "third"]

    def test_unsubscribe_during_publish(self):
        store = create_store({"count": 0})
        calls = []

        def first(state, prev):
            calls.append("first")
            unsubscribe_second()

        store.subscribe(first)
        unsubscribe_second = store.subscribe(lambda state, prev: calls.append("second"))
        store.patch({"count": 1})
        store.patch({"count": 2})
        assert calls == ["first", "second", "first"]

    def test_no_change_no_call(self):
        store = create_store({"count": 0})
        calls = []
        store.subscribe(lambda state, prev: calls.append(state))
        store.patch({"count": 0})
        store.update(lambda state: None)
        assert calls == []

    def test_failing_subscriber_does_not_stop_the_others(self, caplog):
        store = create_store({"count": 0})
        calls = []

        def broken(state, prev):
            raise RuntimeError("broken subscriber")

        store.subscribe(broken)
        store.subscribe(lambda state, prev: calls.append(state["count"]))

        with caplog.at_level(logging.ERROR, logger="troza.store"):
            with pytest.raises(RuntimeError, match="broken subscriber"):
                store.patch({"count": 1})

        assert calls == [1]
        assert store.get()["count"] == 1
        assert any("failed" in record.getMessage() for record in caplog.records)

    def test_first_error_is_reraised(self):
        store = create_store({"count": 0})

        def fail_with(exc):
            def subscriber(state, prev):
                raise exc

            return subscriber

        store.subscribe(fail_with(KeyError("first")))
        store.subscribe(fail_with(ValueError("second")))
        with pytest.raises(KeyError):
            store.patch({"count": 1})

    def test_type_errors(self):
        store = create_store({"count": 0})
        with pytest.raises(TypeError, match="callback"):
            store.subscribe(42)
        with pytest.raises(TypeError, match="selector"):
            store.subscribe(42, lambda value, prev: None)
        with pytest.raises(TypeError, match="callback"):
            store.subscribe(lambda state: state["count"], "nope")
