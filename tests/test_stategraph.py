import asyncio
import unittest

from hypothesis import given, settings, strategies as st
from parameterized import parameterized

import threepio_graph as tg
from threepio_graph import END, START, MapState, StateGraph


def add(n):
    return lambda state: state.set("value", state["value"] + n)


def mul(n):
    return lambda state: state.set("value", state["value"] * n)


def linear_graph():
    return (
        StateGraph()
        .add_node("A", add(1))
        .add_node("B", mul(2))
        .add_node("C", add(10))
        .add_edge("A", "B")
        .add_edge("B", "C")
        .add_edge("C", END)
        .set_entry_point("A")
    )


class TestStateGraphConstruction(unittest.TestCase):

    def setUp(self):
        self.graph = StateGraph()

    def test_init_defaults(self):
        """
        A new graph has the default cap and name, no entry point, and the START and END markers.
        """
        self.assertEqual(self.graph.max_iterations, 100)
        self.assertEqual(self.graph.name, "StateGraph")
        self.assertIsNone(self.graph.entry_point)
        self.assertIn(START, self.graph.graph.nodes)
        self.assertIn(END, self.graph.graph.nodes)

    @parameterized.expand([
        ("zero", 0),
        ("negative", -5),
        ("bool", True),
        ("string", "10"),
    ])
    def test_invalid_max_iterations(self, name, value):
        """max_iterations must be a positive integer."""
        with self.assertRaises(tg.GraphConstructionError):
            StateGraph(max_iterations=value)

    def test_add_node_returns_graph(self):
        """add_node returns the graph for chaining."""
        self.assertIs(self.graph.add_node("a", add(1)), self.graph)
        self.assertEqual(self.graph.node("a").name, "a")

    def test_add_node_duplicate(self):
        """Adding a node twice fails and keeps the first function."""
        first = add(1)
        self.graph.add_node("a", first)
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_node("a", add(2))
        self.assertIs(self.graph.node("a").function, first)

    def test_construction_error_is_value_error(self):
        """GraphConstructionError can be caught as a ValueError."""
        self.graph.add_node("a", add(1))
        with self.assertRaises(ValueError):
            self.graph.add_node("a", add(1))

    @parameterized.expand([
        ("end", END),
        ("start", START),
        ("empty", ""),
    ])
    def test_add_node_invalid_name(self, name, node_name):
        """Reserved or empty names cannot be used for nodes."""
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_node(node_name, add(1))

    def test_add_node_not_callable(self):
        """A node function must be callable."""
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_node("a", "not a function")

    def test_node_description(self):
        """The description is kept on the node and in the topology mirror."""
        self.graph.add_node("a", add(1), description="adds one")
        self.assertEqual(self.graph.node("a").description, "adds one")
        self.assertEqual(self.graph.graph.nodes["a"]["description"], "adds one")

    def test_node_lookup_missing(self):
        """Looking up an unknown node raises KeyError."""
        with self.assertRaises(KeyError):
            self.graph.node("missing")

    def test_add_edge(self):
        """A direct edge is registered and mirrored as a successor."""
        self.graph.add_node("a", add(1)).add_node("b", add(1))
        self.graph.add_edge("a", "b")
        self.assertIsInstance(self.graph.edge("a"), tg.DirectEdge)
        self.assertIn("b", self.graph.successors("a"))

    def test_add_edge_to_end(self):
        """Edges may point at END."""
        self.graph.add_node("a", add(1)).add_edge("a", END)
        self.assertEqual(self.graph.edge("a").target, END)

    @parameterized.expand([
        ("unknown_target", "a", "missing"),
        ("unknown_source", "missing", "a"),
        ("start_as_target", "a", START),
    ])
    def test_add_edge_unknown_node(self, name, source, target):
        """Edges between unknown nodes, or into START, are rejected."""
        self.graph.add_node("a", add(1))
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_edge(source, target)

    def test_second_edge_for_source_is_rejected(self):
        """
        A source keeps its first edge; any second edge of any kind is rejected.
        """
        self.graph.add_node("a", add(1)).add_node("b", add(1))
        self.graph.add_edge("a", "b")
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_edge("a", END)
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_conditional_edge("a", lambda state: END)
        self.assertEqual(self.graph.edge("a").target, "b")

    def test_set_finish_point(self):
        """set_finish_point is shorthand for an edge to END."""
        self.graph.add_node("a", add(1)).set_finish_point("a")
        self.assertEqual(self.graph.edge("a"), tg.DirectEdge("a", END))

    def test_add_conditional_edge_validates_declared_targets(self):
        """Declared targets must exist and must not be empty."""
        self.graph.add_node("a", add(1))
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_conditional_edge("a", lambda state: "b", targets=["b"])
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_conditional_edge("a", lambda state: END, targets=[])

    def test_add_conditional_edge_without_targets(self):
        """A conditional edge may leave its targets undeclared."""
        self.graph.add_node("a", add(1))
        self.graph.add_conditional_edge("a", lambda state: END, description="done?")
        edge = self.graph.edge("a")
        self.assertIsInstance(edge, tg.ConditionalEdge)
        self.assertEqual(edge.description, "done?")
        self.assertIsNone(edge.targets)

    def test_add_conditional_router_validates_routes(self):
        """Router routes and the default route must name known nodes."""
        self.graph.add_node("a", add(1))
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_conditional_router("a", {"missing": lambda state: True})
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.add_conditional_router("a", {}, default_route="missing")

    def test_add_conditional_router(self):
        """A router keeps its route order and defaults to END."""
        self.graph.add_node("a", add(1)).add_node("b", add(1))
        self.graph.add_conditional_router("a", {"b": lambda state: True})
        edge = self.graph.edge("a")
        self.assertIsInstance(edge, tg.ConditionalRouter)
        self.assertEqual(list(edge.routes), ["b"])
        self.assertEqual(edge.default_route, END)
        self.assertEqual(edge.targets, ("b", END))

    def test_set_entry_point(self):
        """Setting the entry point again replaces the previous one."""
        self.graph.add_node("a", add(1)).add_node("b", add(1))
        self.graph.set_entry_point("a")
        self.graph.set_entry_point("b")
        self.assertEqual(self.graph.entry_point, "b")
        self.assertEqual(list(self.graph.graph.successors(START)), ["b"])

    def test_set_entry_point_unknown(self):
        """The entry point must be a registered node."""
        with self.assertRaises(tg.GraphConstructionError):
            self.graph.set_entry_point("missing")

    def test_registries_are_read_only(self):
        """The node registry cannot be modified directly."""
        self.graph.add_node("a", add(1))
        with self.assertRaises(TypeError):
            self.graph.nodes["b"] = None

    def test_compile_without_entry_point(self):
        """Compiling without an entry point fails."""
        self.graph.add_node("a", add(1))
        with self.assertRaises(tg.GraphNotConfiguredError):
            self.graph.compile()

    def test_compiled_graph_is_frozen(self):
        """
        Later changes to the builder do not reach a compiled graph, which cannot be modified.
        """
        graph = linear_graph()
        compiled = graph.compile()
        graph.add_node("D", add(1))
        self.assertNotIn("D", compiled.nodes)
        self.assertIsInstance(compiled, tg.CompiledGraph)
        with self.assertRaises(Exception):
            compiled.graph.add_node("E")

    def test_build_is_compile(self):
        """build is an alias of compile."""
        self.assertIsInstance(linear_graph().build(), tg.CompiledGraph)

    def test_from_config(self):
        """from_config applies the iteration cap and accepts a name."""
        graph = StateGraph.from_config(tg.GraphConfig(max_iterations=7), name="cfg")
        self.assertEqual(graph.max_iterations, 7)
        self.assertEqual(graph.name, "cfg")

    def test_repr(self):
        """repr mentions the entry point."""
        self.assertIn("entry: A", repr(linear_graph()))


class TestStateGraphInvoke(unittest.IsolatedAsyncioTestCase):

    async def test_invoke_without_entry_point(self):
        """Invoking a graph with no entry point fails."""
        graph = StateGraph().add_node("a", add(1))
        with self.assertRaises(tg.GraphNotConfiguredError):
            await graph.invoke(MapState(value=0))

    async def test_linear_execution(self):
        """
        A linear graph runs each node once in order and reports the iteration count.
        """
        result = await linear_graph().invoke(MapState(value=0))
        self.assertEqual(result.state["value"], 12)
        self.assertEqual(result.path, ["A", "B", "C"])
        self.assertEqual(result.metadata["iterations"], 3)
        self.assertEqual(result.metadata["entry_point"], "A")

    async def test_missing_edge_is_implicit_end(self):
        """A node without an outgoing edge ends the run."""
        graph = StateGraph().add_node("a", add(1)).set_entry_point("a")
        result = await graph.invoke(MapState(value=0))
        self.assertEqual(result.state["value"], 1)
        self.assertEqual(result.path, ["a"])

    async def test_async_nodes(self):
        """Sync and async nodes can be mixed."""
        async def slow_add(state):
            await asyncio.sleep(0)
            return state.set("value", state["value"] + 5)

        graph = (
            StateGraph()
            .add_node("sync", add(1))
            .add_node("async", slow_add)
            .add_edge("sync", "async")
            .set_entry_point("sync")
        )
        result = await graph.invoke(MapState(value=0))
        self.assertEqual(result.state["value"], 6)

    async def test_self_loop_trips_loop_guard(self):
        """
        An endless self loop trips the loop guard with node, path and cap on the error.
        """
        graph = (
            StateGraph(max_iterations=10)
            .add_node("loop", add(1))
            .add_edge("loop", "loop")
            .set_entry_point("loop")
        )
        with self.assertRaises(tg.LoopGuardError) as cm:
            await graph.invoke(MapState(value=0))
        self.assertEqual(cm.exception.max_iterations, 10)
        self.assertEqual(cm.exception.node, "loop")
        self.assertEqual(len(cm.exception.path), 10)
        self.assertIn("maximum iterations (10)", str(cm.exception))
        self.assertIsInstance(cm.exception, RuntimeError)

    async def test_loop_guard_allows_exactly_max_iterations(self):
        """A run of exactly max_iterations steps completes."""
        graph = (
            StateGraph(max_iterations=3)
            .add_node("a", add(1))
            .add_node("b", add(1))
            .add_node("c", add(1))
            .add_edge("a", "b")
            .add_edge("b", "c")
            .set_entry_point("a")
        )
        result = await graph.invoke(MapState(value=0))
        self.assertEqual(result.path, ["a", "b", "c"])

    async def test_conditional_loop(self):
        """A conditional edge can loop back until the state says stop."""
        graph = (
            StateGraph()
            .add_node("inc", add(1))
            .add_conditional_edge(
                "inc", lambda state: "inc" if state["value"] < 5 else END
            )
            .set_entry_point("inc")
        )
        result = await graph.invoke(MapState(value=0))
        self.assertEqual(result.state["value"], 5)
        self.assertEqual(len(result.path), 5)
        self.assertEqual(result.path, ["inc"] * 5)

    async def test_async_router(self):
        """Routers may be coroutine functions."""
        async def router(state):
            await asyncio.sleep(0)
            return "b"

        graph = (
            StateGraph()
            .add_node("a", add(1))
            .add_node("b", add(10))
            .add_conditional_edge("a", router, targets=["b"])
            .set_entry_point("a")
        )
        result = await graph.invoke(MapState(value=0))
        self.assertEqual(result.path, ["a", "b"])
        self.assertEqual(result.state["value"], 11)

    @parameterized.expand([
        ("first_match", "question", "answer"),
        ("second_match", "command", "execute"),
        ("fallthrough", "other", "unknown"),
    ])
    async def test_conditional_router_order(self, name, kind, expected):
        """The first matching route wins and the default catches the rest."""
        graph = (
            StateGraph()
            .add_node("classify", lambda state: state)
            .add_node("answer", lambda state: state.set("handled", "answer"))
            .add_node("execute", lambda state: state.set("handled", "execute"))
            .add_node("unknown", lambda state: state.set("handled", "unknown"))
            .add_conditional_router(
                "classify",
                {
                    "answer": lambda state: state["kind"] == "question",
                    "execute": lambda state: state["kind"] in ("question", "command"),
                },
                default_route="unknown",
            )
            .set_entry_point("classify")
        )
        result = await graph.invoke(MapState(kind=kind))
        self.assertEqual(result.path, ["classify", expected])
        self.assertEqual(result.state["handled"], expected)

    async def test_conditional_router_default_end(self):
        """With no match and no default the router ends the run."""
        graph = (
            StateGraph()
            .add_node("a", add(1))
            .add_node("b", add(1))
            .add_conditional_router("a", {"b": lambda state: False})
            .set_entry_point("a")
        )
        result = await graph.invoke(MapState(value=0))
        self.assertEqual(result.path, ["a"])

    async def test_conditional_router_async_predicate(self):
        """Router predicates may be coroutine functions."""
        async def is_big(state):
            return state["value"] > 10

        graph = (
            StateGraph()
            .add_node("a", add(20))
            .add_node("big", add(0))
            .add_conditional_router("a", {"big": is_big})
            .set_entry_point("a")
        )
        result = await graph.invoke(MapState(value=0))
        self.assertEqual(result.path, ["a", "big"])

    @parameterized.expand([
        ("unknown_name", "missing"),
        ("not_a_string", 42),
        ("none", None),
    ])
    async def test_invalid_route(self, name, answer):
        """
        A router answer that is not a known node raises InvalidRouteError.
        """
        graph = (
            StateGraph()
            .add_node("a", add(1))
            .add_conditional_edge("a", lambda state: answer)
            .set_entry_point("a")
        )
        with self.assertRaises(tg.InvalidRouteError) as cm:
            await graph.invoke(MapState(value=0))
        self.assertEqual(cm.exception.source, "a")
        self.assertEqual(cm.exception.target, answer)

    async def test_route_outside_declared_targets(self):
        """Routing to a node outside the declared targets is an error."""
        graph = (
            StateGraph()
            .add_node("a", add(1))
            .add_node("b", add(1))
            .add_node("c", add(1))
            .add_conditional_edge("a", lambda state: "c", targets=["b", END])
            .set_entry_point("a")
        )
        with self.assertRaises(tg.InvalidRouteError):
            await graph.invoke(MapState(value=0))

    async def test_node_exception_propagates_unmodified(self):
        """Node exceptions reach the caller as the same object."""
        error = KeyError("boom")

        def failing(state):
            raise error

        graph = StateGraph().add_node("bad", failing).set_entry_point("bad")
        with self.assertRaises(KeyError) as cm:
            await graph.invoke(MapState(value=0))
        self.assertIs(cm.exception, error)

    async def test_router_exception_propagates_unmodified(self):
        """Router exceptions reach the caller as the same object."""
        error = ZeroDivisionError("router")

        def router(state):
            raise error

        graph = (
            StateGraph()
            .add_node("a", add(1))
            .add_conditional_edge("a", router)
            .set_entry_point("a")
        )
        with self.assertRaises(ZeroDivisionError) as cm:
            await graph.invoke(MapState(value=0))
        self.assertIs(cm.exception, error)

    async def test_node_returning_none(self):
        """A node that returns None raises InvalidStateError."""
        graph = StateGraph().add_node("a", lambda state: None).set_entry_point("a")
        with self.assertRaises(tg.InvalidStateError):
            await graph.invoke(MapState(value=0))

    async def test_node_receives_context(self):
        """
        Nodes that accept a context see the node, path, iteration and graph name.
        """
        seen = []

        def record(state, context):
            seen.append(context)
            return state

        graph = (
            StateGraph(name="ctx")
            .add_node("a", record)
            .add_node("b", record)
            .add_edge("a", "b")
            .set_entry_point("a")
        )
        await graph.invoke(MapState())
        self.assertEqual([c.node for c in seen], ["a", "b"])
        self.assertEqual(seen[1].path, ("a",))
        self.assertEqual(seen[1].iteration, 2)
        self.assertEqual(seen[0].graph_name, "ctx")

    async def test_router_receives_context(self):
        """Routers that accept a context can route on the path so far."""
        def router(state, context):
            return "a" if context.path.count("a") < 3 else END

        graph = (
            StateGraph()
            .add_node("a", add(1))
            .add_conditional_edge("a", router)
            .set_entry_point("a")
        )
        result = await graph.invoke(MapState(value=0))
        self.assertEqual(result.path, ["a", "a", "a"])

    async def test_dataclass_state(self):
        """Frozen dataclass states flow through the graph like MapState."""
        from dataclasses import dataclass

        @dataclass(frozen=True)
        class Counter(tg.DataclassState):
            value: int = 0

        graph = (
            StateGraph()
            .add_node("inc", lambda state: state.copy_with(value=state.value + 1))
            .add_conditional_edge("inc", lambda state: "inc" if state.value < 3 else END)
            .set_entry_point("inc")
        )
        result = await graph.invoke(Counter())
        self.assertEqual(result.state, Counter(value=3))

    async def test_concurrent_invocations_are_isolated(self):
        """
        Concurrent runs of one compiled graph do not share state or path.
        """
        async def slow_add(state):
            await asyncio.sleep(0.01)
            return state.set("value", state["value"] + 1)

        compiled = (
            StateGraph()
            .add_node("a", slow_add)
            .add_node("b", slow_add)
            .add_edge("a", "b")
            .set_entry_point("a")
            .compile()
        )
        results = await asyncio.gather(
            *(compiled.invoke(MapState(value=i)) for i in range(5))
        )
        self.assertEqual([r.state["value"] for r in results], [2, 3, 4, 5, 6])
        for result in results:
            self.assertEqual(result.path, ["a", "b"])


class TestStateGraphProperties(unittest.TestCase):

    def test_invoke_sync(self):
        """invoke_sync runs the graph from synchronous code."""
        result = linear_graph().invoke_sync(MapState(value=0))
        self.assertEqual(result.state["value"], 12)

    @settings(max_examples=50, deadline=None)
    @given(st.integers(min_value=-10_000, max_value=10_000))
    def test_repeated_invocations_are_deterministic(self, start):
        """The same input always gives the same state and path."""
        compiled = linear_graph().compile()
        first = compiled.invoke_sync(MapState(value=start))
        second = compiled.invoke_sync(MapState(value=start))
        self.assertEqual(first.state, second.state)
        self.assertEqual(first.path, second.path)
        self.assertEqual(first.state["value"], (start + 1) * 2 + 10)

    @settings(max_examples=30, deadline=None)
    @given(st.integers(min_value=1, max_value=30), st.integers(min_value=0, max_value=40))
    def test_loop_guard_bound(self, max_iterations, loops):
        """Runs finish within the cap and trip the guard beyond it."""
        graph = (
            StateGraph(max_iterations=max_iterations)
            .add_node("inc", add(1))
            .add_conditional_edge(
                "inc", lambda state: "inc" if state["value"] < loops else END
            )
            .set_entry_point("inc")
        )
        steps = max(loops, 1)
        if steps <= max_iterations:
            result = graph.invoke_sync(MapState(value=0))
            self.assertEqual(len(result.path), steps)
        else:
            with self.assertRaises(tg.LoopGuardError):
                graph.invoke_sync(MapState(value=0))


if __name__ == "__main__":
    unittest.main()
