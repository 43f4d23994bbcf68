"""Distributed execution of compiled plans.

The dispatcher runs one run's plans across their hosts with a bounded pool
of workers. For each host it opens a single channel, sends the whole plan
in one ``Plan`` message and relays the executor's events until
``PlanComplete``. It is the only place that decides what happens after a
failed action (``Decision`` messages) and the only place that reports
actions the executor never ran (skipped, cancelled, failed by a lost
channel or a timeout).

Events of all hosts are funneled through one queue into the
``ResultAggregator``; each host's events stay in order.
"""

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Mapping

from rook.actions import ActionFailed, ActionRegistry, default_registry
from rook.aggregate import HostNotice, Listener, ResultAggregator, RunResult
from rook.config import RookConfig
from rook.exceptions import ChannelClosedError, TransportError
from rook.logging import log_performance
from rook.message import ProtocolError, decode_event, encode_plan
from rook.transport import Channel, Transport
from rook.types import Outcome, Phase, ResolvedPlan, ResultEvent

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "run cancelled"

Emit = Callable[[ResultEvent | HostNotice], None]


class CancelToken:
    """Cooperative cancellation shared by every host task of a dispatch."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Cancellation requested")
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class _HostState:
    """Tracks which actions of a host have a terminal event."""

    def __init__(self, plan: ResolvedPlan, emit: Emit) -> None:
        self.plan = plan
        self.host = plan.host.name
        self.channel: Channel | None = None
        self.finished: set[int] = set()
        self._emit = emit

    @property
    def done(self) -> bool:
        return len(self.finished) >= len(self.plan)

    def report(self, event: ResultEvent) -> None:
        if event.action_name is None:
            event = replace(event, action_name=self.plan.actions[event.action_index].name)
        if event.is_terminal:
            if event.action_index in self.finished:
                logger.warning(f"{self.host}: second result for action {event.action_index} ignored")
                return
            self.finished.add(event.action_index)
        self._emit(event)

    def notice(self, connection_error: str) -> None:
        self._emit(HostNotice(self.host, connection_error))

    def finish_rest(self, outcome: Outcome, error: str, start: int = 0) -> None:
        for index in range(start, len(self.plan)):
            if index not in self.finished:
                self.report(ResultEvent(self.host, index, Phase.FINISHED, outcome, error=error))


class Dispatcher:
    """Executes plans on their hosts.

    Example:
        >>> dispatcher = Dispatcher(create_transport(config), config)
        >>> result = await dispatcher.dispatch(compiled.plans)
        >>> result.exit_code
        0
    """

    def __init__(
        self,
        transport: Transport,
        config: RookConfig | None = None,
        registry: ActionRegistry | None = None,
    ) -> None:
        self.transport = transport
        self.config = config or RookConfig()
        self.registry = registry or default_registry()

    async def dispatch(
        self,
        plans: Mapping[str, ResolvedPlan],
        cancel: CancelToken | None = None,
        sink: Listener | None = None,
        name: str | None = None,
    ) -> RunResult:
        """Run every plan and return the aggregated result.

        Args:
            plans: Plans keyed by host name
            cancel: Token that stops the dispatch when cancelled
            sink: Called with every result event, in arrival order
            name: Run name for the result
        """
        cancel = cancel or CancelToken()
        aggregator = ResultAggregator(plans, name=name)
        if sink is not None:
            aggregator.add_listener(sink)

        events: asyncio.Queue[ResultEvent | HostNotice | None] = asyncio.Queue()
        consumer = asyncio.create_task(self._consume(events, aggregator))

        work: asyncio.Queue[ResolvedPlan] = asyncio.Queue()
        for plan in plans.values():
            work.put_nowait(plan)
        workers = min(self.config.parallel, len(plans))

        with log_performance(logger, "Dispatch", run=name, hosts=len(plans), parallel=workers):
            try:
                await asyncio.gather(*(self._worker(work, events.put_nowait, cancel) for _ in range(workers)))
            finally:
                events.put_nowait(None)
                await consumer

        result = aggregator.summary()
        result.cancelled = result.cancelled or cancel.cancelled
        return result

    async def _consume(
        self,
        events: "asyncio.Queue[ResultEvent | HostNotice | None]",
        aggregator: ResultAggregator,
    ) -> None:
        while True:
            item = await events.get()
            if item is None:
                return
            aggregator.consume(item)

    async def _worker(self, work: "asyncio.Queue[ResolvedPlan]", emit: Emit, cancel: CancelToken) -> None:
        while True:
            try:
                plan = work.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self.run_host(plan, emit, cancel)

    async def run_host(self, plan: ResolvedPlan, emit: Emit, cancel: CancelToken) -> None:
        """Execute one host's plan, reporting a terminal event for every action."""
        state = _HostState(plan, emit)
        if cancel.cancelled:
            state.finish_rest(Outcome.CANCELLED, CANCELLED_MESSAGE)
            return
        if not plan.actions:
            return

        session = asyncio.create_task(self._session(plan, state))
        waiter = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {session, waiter},
                timeout=self.config.host_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if session in done:
                self._session_finished(session, state)
            else:
                session.cancel()
                await asyncio.gather(session, return_exceptions=True)
                if state.channel is not None:
                    await state.channel.send_quietly("Cancel", {})
                if cancel.cancelled:
                    logger.info(f"{state.host}: cancelled")
                    state.finish_rest(Outcome.CANCELLED, CANCELLED_MESSAGE)
                else:
                    logger.warning(f"{state.host}: timed out after {self.config.host_timeout}s")
                    state.finish_rest(Outcome.FAILED, f"host timed out after {self.config.host_timeout}s")
        finally:
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            if state.channel is not None:
                await self._close(state.channel)

    @staticmethod
    async def _close(channel: Channel) -> None:
        # Every action already has its terminal event; a failing close only gets logged
        try:
            await channel.close()
        except Exception as e:
            logger.error(f"{channel.host}: error while closing channel: {e}", exc_info=e)

    def _session_finished(self, session: "asyncio.Task[None]", state: _HostState) -> None:
        error = session.exception()
        if error is None:
            return

        if state.channel is None and isinstance(error, TransportError):
            logger.error(f"{state.host}: connection failed: {error}")
            state.notice(str(error))
            state.finish_rest(Outcome.FAILED, f"connection error: {error}")
        elif isinstance(error, (ChannelClosedError, ProtocolError, BrokenPipeError, ConnectionResetError)):
            logger.error(f"{state.host}: channel closed: {error}")
            state.finish_rest(Outcome.FAILED, f"channel closed: {error}")
        else:
            logger.error(f"{state.host}: dispatch failed", exc_info=error)
            state.finish_rest(Outcome.FAILED, f"internal error: {type(error).__name__}: {error}")

    async def _session(self, plan: ResolvedPlan, state: _HostState) -> None:
        state.channel = await self.transport.open(plan.host)
        await self._exchange(state.channel, plan, state)

    async def _exchange(self, channel: Channel, plan: ResolvedPlan, state: _HostState) -> None:
        host = plan.host.name
        proceed = plan.options.continue_on_error
        if proceed is None:
            proceed = self.config.continue_on_error
        last = len(plan) - 1

        await channel.send("Plan", self.wire_plan(plan))

        while True:
            msg = await channel.receive()
            if msg is None:
                raise ChannelClosedError("executor went away before the plan completed", host=host)
            msg_type, data = msg

            if msg_type == "Event":
                event = self._decode_event(host, data, len(plan))
                state.report(event)
                if event.is_terminal and event.outcome == Outcome.FAILED and event.action_index < last:
                    await channel.send("Decision", {"action_index": event.action_index, "proceed": proceed})
                    if not proceed:
                        failed_name = plan.actions[event.action_index].name
                        state.finish_rest(
                            Outcome.SKIPPED,
                            f"skipped after '{failed_name}' failed",
                            start=event.action_index + 1,
                        )

            elif msg_type == "PlanComplete":
                if not state.done:
                    if isinstance(data, dict) and data.get("cancelled"):
                        state.finish_rest(Outcome.CANCELLED, CANCELLED_MESSAGE)
                    else:
                        state.finish_rest(Outcome.FAILED, "not run by the executor")
                logger.debug(f"{host}: plan complete")
                return

            elif msg_type in ("Error", "ExecutorSystemError"):
                message = data.get("message") if isinstance(data, dict) else data
                raise ChannelClosedError(f"executor error: {message}", host=host)

            else:
                logger.warning(f"{host}: unexpected {msg_type} message ignored")

    @staticmethod
    def _decode_event(host: str, data: Any, count: int) -> ResultEvent:
        try:
            event = ResultEvent.from_wire(host, decode_event(data))
        except (KeyError, ValueError) as e:
            raise ProtocolError(f"Invalid event from {host}: {e}") from e
        if not 0 <= event.action_index < count:
            raise ProtocolError(f"Event for unknown action {event.action_index} from {host}")
        return event

    def wire_plan(self, plan: ResolvedPlan) -> dict[str, Any]:
        """Plan message data, with control-side preparation applied.

        An action whose preparation fails still travels in the plan so it
        fails at its own position.
        """
        actions: list[dict[str, Any]] = []
        for action in plan.actions:
            item = action.to_wire()
            definition = self.registry.get(action.type)
            if definition is not None and definition.prepare is not None:
                base_dir = Path(action.origin) if action.origin else None
                try:
                    item["params"] = definition.prepare(item["params"], base_dir)
                except ActionFailed as e:
                    logger.warning(f"{plan.host.name}: cannot prepare '{action.name}': {e.msg}")
                    item["error"] = e.msg
            actions.append(item)

        options = plan.options.to_dict()
        options["action_timeout"] = self.config.action_timeout
        return encode_plan(plan.host.name, actions, options)
