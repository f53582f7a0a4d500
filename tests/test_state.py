import pickle
import unittest
from dataclasses import FrozenInstanceError, dataclass

from threepio_graph import DataclassState, ExecutionResult, GraphState, MapState


@dataclass(frozen=True)
class Counter(DataclassState):
    value: int = 0
    label: str = ""


class TestMapState(unittest.TestCase):

    def test_get_and_contains(self):
        """get falls back to None or the given default, and in checks keys."""
        state = MapState({"a": 1})
        self.assertEqual(state.get("a"), 1)
        self.assertIsNone(state.get("missing"))
        self.assertEqual(state.get("missing", 5), 5)
        self.assertIn("a", state)
        self.assertNotIn("b", state)

    def test_kwargs_constructor(self):
        """Keyword arguments build the same state as a mapping."""
        self.assertEqual(MapState(a=1, b=2), MapState({"a": 1, "b": 2}))

    def test_set_returns_new_state(self):
        """set leaves the original untouched and returns a new state."""
        state = MapState({"count": 0})
        updated = state.set("count", 1)
        self.assertEqual(state["count"], 0)
        self.assertEqual(updated["count"], 1)
        self.assertIsNot(state, updated)

    def test_set_all_and_remove(self):
        """set_all merges keys and remove drops one, ignoring missing keys."""
        state = MapState({"a": 1, "b": 2})
        self.assertEqual(state.set_all({"b": 3, "c": 4}).to_dict(), {"a": 1, "b": 3, "c": 4})
        self.assertEqual(state.remove("a").to_dict(), {"b": 2})
        self.assertEqual(state.remove("missing"), state)

    def test_copy_with(self):
        """copy_with updates and adds keys."""
        state = MapState({"a": 1})
        self.assertEqual(state.copy_with(a=2, b=3), MapState({"a": 2, "b": 3}))

    def test_value_equality(self):
        """States compare by value, including against plain dicts."""
        self.assertEqual(MapState({"a": 1}), MapState({"a": 1}))
        self.assertNotEqual(MapState({"a": 1}), MapState({"a": 2}))
        self.assertEqual(MapState({"a": 1}), {"a": 1})

    def test_is_read_only(self):
        """Items and attributes cannot be assigned."""
        state = MapState({"a": 1})
        with self.assertRaises(TypeError):
            state["a"] = 2
        with self.assertRaises(AttributeError):
            state.other = 1

    def test_to_dict_is_a_copy(self):
        """Mutating the to_dict result does not touch the state."""
        state = MapState({"a": 1})
        data = state.to_dict()
        data["a"] = 99
        self.assertEqual(state["a"], 1)

    def test_pickle_round_trip(self):
        """A MapState survives pickling."""
        state = MapState({"a": [1, 2]})
        self.assertEqual(pickle.loads(pickle.dumps(state)), state)

    def test_satisfies_graph_state_protocol(self):
        """The type satisfies the GraphState protocol."""
        self.assertIsInstance(MapState(), GraphState)


class TestDataclassState(unittest.TestCase):

    def test_copy_with(self):
        """copy_with replaces fields on a new instance."""
        counter = Counter(value=1, label="x")
        updated = counter.copy_with(value=2)
        self.assertEqual(updated, Counter(value=2, label="x"))
        self.assertEqual(counter.value, 1)

    def test_frozen(self):
        """Frozen dataclass states reject assignment."""
        with self.assertRaises(FrozenInstanceError):
            Counter().value = 3

    def test_satisfies_graph_state_protocol(self):
        """The type satisfies the GraphState protocol."""
        self.assertIsInstance(Counter(), GraphState)


class TestExecutionResult(unittest.TestCase):

    def test_accessors(self):
        """final_state, iterations and path read from the result."""
        result = ExecutionResult(MapState(v=1), ["a", "b"], {"iterations": 2})
        self.assertEqual(result.final_state, MapState(v=1))
        self.assertEqual(result.iterations, 2)
        self.assertEqual(result.path, ["a", "b"])

    def test_to_dict_unwraps_map_state(self):
        """to_dict turns a MapState into a plain dict."""
        result = ExecutionResult(MapState(v=1), ["a"], {"iterations": 1})
        self.assertEqual(
            result.to_dict(),
            {"state": {"v": 1}, "path": ["a"], "metadata": {"iterations": 1}},
        )


if __name__ == "__main__":
    unittest.main()
