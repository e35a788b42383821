# control/transport.py

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol, Tuple, Union

from uuid6 import uuid7

from shared_libs.hardware_core.compiler import CommandPayload
from shared_libs.hardware_core.errors import TransportError, TransportTimeout

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_ERROR = "error"


class Transport(Protocol):
    """Delivers one packet to a controller and returns its response.

    Packets look like {"id": ..., "cmd": ..., <parameters>}; responses like
    {"id": ..., "status": "ok"|"error", "data": ..., "error": ...}.
    """

    async def send(self, controller_id: str, packet: Dict[str, Any]) -> Dict[str, Any]:
        ...


class TransportManager:
    """Serialises dispatch per controller and enforces per-command timeouts.

    Different controllers are driven in parallel; a single controller only ever
    has one command in flight.
    """

    def __init__(self, transport: Transport, default_timeout_ms: int = 5000):
        self.transport = transport
        self.default_timeout_ms = default_timeout_ms
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_lock(self, controller_id: str) -> asyncio.Lock:
        if controller_id not in self._locks:
            self._locks[controller_id] = asyncio.Lock()
        return self._locks[controller_id]

    async def execute(self, payload: CommandPayload) -> Any:
        """Send a compiled command and return the response's data field."""
        packet = payload.to_packet()
        packet["id"] = str(uuid7())
        timeout_s = (payload.timeout_ms or self.default_timeout_ms) / 1000.0
        async with self._get_lock(payload.controller_id):
            logger.debug(f"TX {payload.controller_id}: {packet}")
            try:
                response = await asyncio.wait_for(
                    self.transport.send(payload.controller_id, packet), timeout=timeout_s
                )
            except asyncio.TimeoutError as e:
                raise TransportTimeout(
                    payload.controller_id, f"no response to {payload.command} within {payload.timeout_ms} ms"
                ) from e
        logger.debug(f"RX {payload.controller_id}: {response}")
        return self._unwrap(payload, packet["id"], response)

    @staticmethod
    def _unwrap(payload: CommandPayload, packet_id: str, response: Any) -> Any:
        if not isinstance(response, dict) or "status" not in response:
            raise TransportError(payload.controller_id, f"malformed response to {payload.command}: {response!r}")
        if response.get("id") not in (None, packet_id):
            raise TransportError(
                payload.controller_id,
                f"response id {response.get('id')!r} does not match packet {packet_id}",
            )
        if response["status"] != STATUS_OK:
            raise TransportError(payload.controller_id, f"{payload.command} failed: {response.get('error') or 'unknown error'}")
        return response.get("data")


# --- Simulation ---

@dataclass(frozen=True)
class Fault:
    """Scripted controller-side failure: answered with status 'error'."""
    message: str = "simulated fault"


class _Hang:
    def __repr__(self) -> str:
        return "HANG"


# Scripted result that never answers, so the manager's timeout fires.
HANG = _Hang()

ScriptedResult = Union[Any, Fault, BaseException, Callable[[Dict[str, Any]], Any]]


class SimulatedTransport:
    """In-process controller stand-in for tests and dry runs.

    Results are scripted per command (optionally per controller). Queued results
    are consumed in order; once a queue is empty the command's default applies,
    and commands without a default answer {"status": "ok", "data": None}.
    """

    def __init__(self, latency_s: float = 0.0):
        self.latency_s = latency_s
        self.sent: List[Tuple[str, Dict[str, Any]]] = []
        self._queues: Dict[Tuple[Optional[str], str], Deque[ScriptedResult]] = {}
        self._defaults: Dict[Tuple[Optional[str], str], ScriptedResult] = {}

    def respond(self, command: str, result: ScriptedResult, controller_id: Optional[str] = None) -> None:
        self._defaults[(controller_id, command)] = result

    def script(self, command: str, *results: ScriptedResult, controller_id: Optional[str] = None) -> None:
        self._queues.setdefault((controller_id, command), deque()).extend(results)

    def commands_sent(self, command: Optional[str] = None) -> List[Dict[str, Any]]:
        return [p for _, p in self.sent if command is None or p.get("cmd") == command]

    def _next_result(self, controller_id: str, command: str) -> ScriptedResult:
        for key in ((controller_id, command), (None, command)):
            queue = self._queues.get(key)
            if queue:
                return queue.popleft()
        for key in ((controller_id, command), (None, command)):
            if key in self._defaults:
                return self._defaults[key]
        return None

    async def send(self, controller_id: str, packet: Dict[str, Any]) -> Dict[str, Any]:
        self.sent.append((controller_id, dict(packet)))
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        result = self._next_result(controller_id, packet.get("cmd", ""))
        if result is HANG:
            await asyncio.Event().wait()
        if callable(result) and not isinstance(result, type):
            result = result(packet)
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, Fault):
            return {"id": packet.get("id"), "status": STATUS_ERROR, "data": None, "error": result.message}
        return {"id": packet.get("id"), "status": STATUS_OK, "data": result}
