"""Remote executor.

Runs on (or is pushed to) each target. It receives a host's whole plan in
one ``Plan`` message, runs the actions strictly in order with the handler
registered for each type, and streams a ``started`` event, any ``output``
chunks and a ``finished`` event per action.

The executor never decides continue-on-error policy itself: after a failed
action it waits for the control process's ``Decision``. A ``Cancel``
received at any time stops the plan before the next action.

Only the standard library plus ``rook.message`` and ``rook.actions`` may be
imported here, since this package is bundled into the executor archive.
"""

import asyncio
import logging
import traceback
from typing import Any, Mapping

from rook.actions import ActionContext, ActionFailed, ActionRegistry, default_registry
from rook.message import PROTOCOL_VERSION, MessageProtocol, ProtocolError, decode_plan, encode_event

logger = logging.getLogger("rook.executor")


class PlanExecutor:
    """Serves plans over one reader/writer pair until shutdown or EOF."""

    def __init__(
        self,
        reader: Any,
        writer: Any,
        registry: ActionRegistry | None = None,
        protocol: MessageProtocol | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.registry = registry or default_registry()
        self.protocol = protocol or MessageProtocol()
        self.cancelled = False
        self.plans_run = 0
        self._inbox: asyncio.Queue[tuple[str, Any] | None] = asyncio.Queue()
        self._closing = False

    async def serve(self) -> None:
        """Process messages until Shutdown or end of input."""
        pump = asyncio.create_task(self._pump())
        try:
            while not self._closing:
                msg = await self._inbox.get()
                if msg is None:
                    logger.info("EOF received, shutting down")
                    await self._send_quietly("Goodbye", {})
                    return
                await self._dispatch(*msg)
            await self._send_quietly("Goodbye", {})
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _dispatch(self, msg_type: str, data: Any) -> None:
        if msg_type == "Hello":
            logger.info("Hello received")
            await self.protocol.send_message(
                self.writer,
                "Hello",
                {"version": PROTOCOL_VERSION, "actions": self.registry.names()},
            )

        elif msg_type == "Plan":
            try:
                await self.run_plan(data)
            except ProtocolError as e:
                logger.warning(f"Rejected plan: {e}")
                await self.protocol.send_message(self.writer, "Error", {"message": str(e)})

        elif msg_type == "Shutdown":
            logger.info("Shutdown requested")
            self._closing = True

        elif msg_type in ("Cancel", "Decision"):
            logger.debug(f"Ignoring {msg_type} outside of a plan")

        else:
            logger.warning(f"Unknown message type: {msg_type}")
            await self.protocol.send_message(
                self.writer, "Error", {"message": f"Unknown message type: {msg_type}"}
            )

    async def _pump(self) -> None:
        # Reads continuously so Cancel is noticed while an action runs
        try:
            while True:
                msg = await self.protocol.read_message(self.reader)
                if msg is not None and msg[0] == "Cancel":
                    logger.info("Cancel received")
                    self.cancelled = True
                await self._inbox.put(msg)
                if msg is None:
                    return
        except ProtocolError as e:
            logger.error(f"Protocol error: {e}")
            await self._send_quietly("ExecutorSystemError", {"message": str(e)})
            await self._inbox.put(None)

    async def _send_quietly(self, msg_type: str, data: Any) -> None:
        try:
            await self.protocol.send_message(self.writer, msg_type, data)
        except (BrokenPipeError, ConnectionResetError, ProtocolError) as e:
            logger.debug(f"Could not send {msg_type}: {e}")

    async def _event(self, index: int, phase: str, **fields: Any) -> None:
        await self.protocol.send_message(self.writer, "Event", encode_event(index, phase, **fields))

    async def run_plan(self, data: Any) -> int:
        """Run a plan's actions in order.

        Returns:
            Number of actions that were attempted
        """
        host_id, actions, options = decode_plan(data)
        timeout = options.get("action_timeout")
        attempted = 0
        logger.info(f"Plan for {host_id}: {len(actions)} action(s)")

        for index, action in enumerate(actions):
            if self.cancelled or self._closing:
                logger.info(f"Stopping before action {index}")
                break
            attempted += 1
            outcome = await self.run_action(host_id, index, action, timeout)
            if outcome == "failed" and index < len(actions) - 1:
                if not await self._await_decision(index):
                    break

        self.plans_run += 1
        await self.protocol.send_message(
            self.writer,
            "PlanComplete",
            {"completed": attempted, "cancelled": self.cancelled},
        )
        return attempted

    async def _await_decision(self, index: int) -> bool:
        while True:
            msg = await self._inbox.get()
            if msg is None:
                self._closing = True
                await self._inbox.put(None)
                return False
            msg_type, data = msg
            if msg_type == "Decision":
                proceed = bool(isinstance(data, dict) and data.get("proceed"))
                logger.info(f"Decision after action {index}: {'proceed' if proceed else 'stop'}")
                return proceed
            if msg_type == "Cancel":
                return False
            if msg_type == "Shutdown":
                self._closing = True
                return False
            logger.warning(f"Unexpected {msg_type} while waiting for a decision")

    async def run_action(self, host: str, index: int, action: dict[str, Any], timeout: float | None) -> str:
        """Run one action and report it. Never raises for handler failures."""
        action_type = action["action"]
        await self._event(index, "started")

        async def sink(text: str) -> None:
            await self._event(index, "output", output=text)

        ctx = ActionContext(host, index, sink)
        definition = self.registry.get(action_type)
        outcome, output, error = "failed", None, None

        try:
            if action.get("error"):
                # Control side could not prepare the action (e.g. unreadable copy source)
                raise ActionFailed(str(action["error"]))
            if definition is None:
                raise ActionFailed(f"Unknown action type '{action_type}'")
            call = definition.handler(dict(action.get("params") or {}), ctx)
            result = await (asyncio.wait_for(call, timeout) if timeout else call)
            if not isinstance(result, Mapping):
                raise ActionFailed(f"handler returned {type(result).__name__}, expected a mapping")
            output = result.get("output")
            outcome = "changed" if result.get("changed") else "unchanged"
        except ActionFailed as e:
            error, output = e.msg, e.output
        except asyncio.TimeoutError:
            error = f"timed out after {timeout}s"
        except Exception as e:
            logger.error(f"Action {action_type} crashed: {e}\n{traceback.format_exc()}")
            error = f"{type(e).__name__}: {e}"

        logger.info(f"Action {index} ({action_type}): {outcome}")
        await self._event(index, "finished", outcome=outcome, output=output, error=error)
        return outcome


async def serve(reader: Any, writer: Any, registry: ActionRegistry | None = None) -> PlanExecutor:
    """Serve one channel until shutdown; returns the executor for inspection."""
    executor = PlanExecutor(reader, writer, registry)
    await executor.serve()
    return executor
