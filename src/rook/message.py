"""Wire protocol between the control process and remote executors.

Messages are length-prefixed JSON: an 8-byte ASCII hex length followed by
a UTF-8 JSON body ``[message_type, data]``.

Example: "0000000d" + '["Hello", {}]'

A host's whole plan travels in one ``Plan`` message; the executor answers
with a stream of ``Event`` messages and a final ``PlanComplete``. After a
failed action the executor waits for a ``Decision`` before going on.

This module only depends on the standard library: it is bundled into the
executor archive.
"""

import asyncio
import json
import logging
from typing import Any

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1


class ProtocolError(Exception):
    """Raised when a frame cannot be encoded or decoded."""


class MessageProtocol:
    """Send and receive length-prefixed JSON messages."""

    MESSAGE_TYPES = {
        "Hello",  # Handshake, both directions
        "Plan",  # Control -> executor: the host's full action list
        "Event",  # Executor -> control: one phase transition of one action
        "Decision",  # Control -> executor: proceed or stop after a failed action
        "Cancel",  # Control -> executor: stop before the next action
        "PlanComplete",  # Executor -> control: end-of-plan marker
        "Shutdown",  # Control -> executor: exit
        "Goodbye",  # Executor -> control: reply to Shutdown / EOF
        "Error",  # Executor -> control: request could not be handled
        "ExecutorSystemError",  # Executor -> control: unhandled exception
    }

    async def send_message(self, writer: Any, msg_type: str, data: Any) -> None:
        """Write one message and drain the writer.

        Raises:
            BrokenPipeError: If the peer went away
            ProtocolError: If the message cannot be serialized or written
        """
        try:
            body = json.dumps([msg_type, data]).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Cannot serialize {msg_type} message: {e}") from e

        try:
            writer.write(f"{len(body):08x}".encode("ascii"))
            writer.write(body)
            await writer.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug(f"Peer closed while sending {msg_type}")
            raise
        except Exception as e:
            raise ProtocolError(f"Failed to send {msg_type}: {e}") from e

        logger.debug(f"Sent message: {msg_type}, length={len(body)}")

    async def read_message(self, reader: Any) -> tuple[str, Any] | None:
        """Read one message.

        Returns:
            (message_type, data), or None on a clean EOF between messages

        Raises:
            ProtocolError: On a truncated or malformed frame
        """
        # Leading whitespace before the prefix and the body is skipped so
        # frames can be typed by hand when debugging an executor.
        prefix = await self._read_exact(reader, 8, allow_eof=True)
        if prefix is None:
            return None

        try:
            length = int(prefix.decode("ascii"), 16)
        except (ValueError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid hex length: {prefix!r}") from e

        body = await self._read_exact(reader, length, allow_eof=False)
        assert body is not None

        try:
            message = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid JSON: {body[:100]!r}") from e

        if not isinstance(message, list) or len(message) != 2:
            raise ProtocolError(f"Invalid message format: {message!r}")
        msg_type, data = message
        if not isinstance(msg_type, str):
            raise ProtocolError(f"Invalid message type: {msg_type!r}")

        logger.debug(f"Received message: {msg_type}, length={length}")
        return msg_type, data

    async def _read_exact(self, reader: Any, count: int, allow_eof: bool) -> bytes | None:
        data = b""
        while len(data) < count:
            try:
                chunk = await reader.read(count - len(data))
            except (ConnectionResetError, asyncio.IncompleteReadError) as e:
                raise ProtocolError(f"Connection lost while reading: {e}") from e
            if not chunk:
                if not data and allow_eof:
                    return None
                raise ProtocolError(f"Incomplete frame: got {len(data)} bytes, expected {count}")
            if not data:
                chunk = chunk.lstrip()
                if not chunk:
                    continue
            data += chunk
        return data


def encode_plan(host_id: str, actions: list[dict[str, Any]], options: dict[str, Any]) -> dict[str, Any]:
    """Build the data of a Plan message."""
    return {"host_id": host_id, "actions": actions, "options": options}


def decode_plan(data: Any) -> tuple[str, list[dict[str, Any]], dict[str, Any]]:
    """Validate and unpack the data of a Plan message.

    Raises:
        ProtocolError: If the payload is not a well-formed plan
    """
    if not isinstance(data, dict) or not isinstance(data.get("host_id"), str):
        raise ProtocolError("Plan requires a host_id")
    actions = data.get("actions")
    if not isinstance(actions, list):
        raise ProtocolError("Plan requires an action list")
    for action in actions:
        if not isinstance(action, dict) or not isinstance(action.get("action"), str):
            raise ProtocolError(f"Invalid plan action: {action!r}")
        if not isinstance(action.get("params", {}), dict):
            raise ProtocolError(f"Invalid params for action {action['action']}")
    options = data.get("options") or {}
    if not isinstance(options, dict):
        raise ProtocolError("Plan options must be a mapping")
    return data["host_id"], actions, options


def encode_event(
    action_index: int,
    phase: str,
    outcome: str | None = None,
    output: str | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    """Build the data of an Event message."""
    return {
        "action_index": action_index,
        "phase": phase,
        "outcome": outcome,
        "output": output,
        "error": error,
    }


def decode_event(data: Any) -> dict[str, Any]:
    """Validate the data of an Event message.

    Raises:
        ProtocolError: If required fields are missing
    """
    if not isinstance(data, dict) or not isinstance(data.get("action_index"), int):
        raise ProtocolError(f"Invalid event: {data!r}")
    if data.get("phase") not in ("started", "output", "finished"):
        raise ProtocolError(f"Invalid event phase: {data.get('phase')!r}")
    return data
