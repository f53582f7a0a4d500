"""
Runnable adapter: a common execution-unit interface for graphs and functions.

A Runnable takes one input and produces one output asynchronously. Graphs,
plain functions and pipelines of both share the same surface:

    - ``invoke(input)``: run once.
    - ``stream(input)``: async iterator over outputs (a graph yields exactly
      one ExecutionResult).
    - ``batch(inputs)``: run each input in turn, preserving order.
    - ``batch_parallel(inputs)``: run all inputs concurrently, preserving order,
      optionally bounded by ``max_concurrency``.
    - ``pipe(next)``: feed this runnable's output into ``next``.

``as_node`` goes the other way and turns any runnable into a node transform.

Example:
    >>> summarize = RunnableLambda(lambda text: text[:20])
    >>> graph.add_node(
    ...     "summarize",
    ...     as_node(
    ...         summarize,
    ...         get_input=lambda state: state["text"],
    ...         set_output=lambda state, summary: state.set("summary", summary),
    ...     ),
    ... )
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Generic,
    Iterable,
    List,
    Optional,
    TypeVar,
)

from .node import call_maybe_async
from .state import ExecutionResult

logger = logging.getLogger(__name__)

I = TypeVar("I")
O = TypeVar("O")
S = TypeVar("S")


class Runnable(ABC, Generic[I, O]):
    """Base class for asynchronous single-input execution units."""

    max_concurrency: Optional[int] = None

    @abstractmethod
    async def invoke(self, input: I) -> O:
        """Run once on ``input``."""

    async def stream(self, input: I) -> AsyncIterator[O]:
        """Yield the outputs for ``input``; by default the single invoke() result."""
        yield await self.invoke(input)

    async def batch(self, inputs: Iterable[I]) -> List[O]:
        """Invoke each input sequentially; results keep the input order."""
        results = []
        for item in inputs:
            results.append(await self.invoke(item))
        return results

    async def batch_parallel(
        self, inputs: Iterable[I], max_concurrency: Optional[int] = None
    ) -> List[O]:
        """
        Invoke every input concurrently; results keep the input order.

        Args:
            inputs: Inputs to run.
            max_concurrency: Upper bound on simultaneous invocations. Falls
                back to the runnable's own ``max_concurrency``; None means
                unbounded.

        Raises:
            Exception: The first failure, after the other invocations have
                been cancelled.
        """
        items = list(inputs)
        limit = max_concurrency if max_concurrency is not None else self.max_concurrency
        if limit is not None and limit <= 0:
            raise ValueError(f"max_concurrency must be greater than 0, got {limit}")

        if limit is None:
            coros = [self.invoke(item) for item in items]
        else:
            semaphore = asyncio.Semaphore(limit)

            async def bounded(item):
                async with semaphore:
                    return await self.invoke(item)

            coros = [bounded(item) for item in items]

        logger.debug(
            f"Running batch of {len(items)} input(s) with max_concurrency={limit}"
        )
        tasks = [asyncio.ensure_future(coro) for coro in coros]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    def pipe(self, next_runnable: "Runnable[O, Any]") -> "PipeRunnable[I, Any]":
        """Return a runnable that feeds this runnable's output into ``next_runnable``."""
        return PipeRunnable(self, next_runnable)

    def __or__(self, other: "Runnable[O, Any]") -> "PipeRunnable[I, Any]":
        return self.pipe(other)


class GraphRunnable(Runnable[S, ExecutionResult[S]]):
    """
    Runnable wrapper around a compiled graph.

    Args:
        graph: A CompiledGraph (or anything with an async ``invoke(state)``).
        max_concurrency: Default bound for ``batch_parallel``.
    """

    def __init__(self, graph: Any, max_concurrency: Optional[int] = None):
        if max_concurrency is not None and max_concurrency <= 0:
            raise ValueError(
                f"max_concurrency must be greater than 0, got {max_concurrency}"
            )
        self.graph = graph
        self.max_concurrency = max_concurrency

    @classmethod
    def from_config(cls, graph: Any, config) -> "GraphRunnable[S]":
        """Wrap ``graph`` using ``config.max_concurrency``."""
        return cls(graph, max_concurrency=config.max_concurrency)

    async def invoke(self, input: S) -> ExecutionResult[S]:
        return await self.graph.invoke(input)

    def __repr__(self) -> str:
        return f"GraphRunnable({self.graph!r}, max_concurrency={self.max_concurrency})"


class RunnableLambda(Runnable[I, O]):
    """Runnable wrapping a plain or coroutine function of one argument."""

    def __init__(self, func: Callable[[I], Any], name: Optional[str] = None):
        if not callable(func):
            raise TypeError("RunnableLambda requires a callable")
        self.func = func
        self.name = name or getattr(func, "__name__", "lambda")

    async def invoke(self, input: I) -> O:
        return await call_maybe_async(self.func, input)

    def __repr__(self) -> str:
        return f"RunnableLambda({self.name})"


class PipeRunnable(Runnable[I, O]):
    """Two runnables in sequence: ``second.invoke(first.invoke(input))``."""

    def __init__(self, first: Runnable[I, Any], second: Runnable[Any, O]):
        self.first = first
        self.second = second

    async def invoke(self, input: I) -> O:
        intermediate = await self.first.invoke(input)
        return await self.second.invoke(intermediate)

    async def stream(self, input: I) -> AsyncIterator[O]:
        async for intermediate in self.first.stream(input):
            yield await self.second.invoke(intermediate)

    def __repr__(self) -> str:
        return f"PipeRunnable({self.first!r} | {self.second!r})"


def as_node(
    runnable: Runnable[I, O],
    get_input: Callable[[S], I],
    set_output: Callable[[S, O], S],
) -> Callable[[S], Any]:
    """
    Turn a runnable into a node transform.

    Args:
        runnable: The runnable to call.
        get_input: Extracts the runnable's input from the state.
        set_output: Returns the next state given the current state and the
            runnable's output.

    Returns:
        An async transform usable with ``StateGraph.add_node``.
    """

    async def node(state: S) -> S:
        output = await runnable.invoke(get_input(state))
        return set_output(state, output)

    node.__name__ = f"as_node({runnable!r})"
    return node
