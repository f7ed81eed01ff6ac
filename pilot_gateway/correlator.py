"""Request/reply matching for commands sent to the gateway.

Every outgoing command carries a fresh transaction id (``tid``). The
correlator keeps one :class:`PendingCommand` per tid until a reply with the
same tid arrives, the deadline passes, or the session is torn down. Each
caller receives at most one outcome; replies for purged tids are logged and
discarded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from . import codec
from .core.models import CommandReply, PendingCommand
from .errors import CommandCancelled, CommandRejected, CorrelationTimeout

LOGGER = logging.getLogger(__name__)

Publisher = Callable[[str, bytes, int], Awaitable[None]]

_EXPIRED_HISTORY = 256


class CommandCorrelator:
    def __init__(
        self,
        publish: Publisher,
        *,
        default_timeout: float = 10.0,
        qos: int = 1,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._publish = publish
        self._default_timeout = default_timeout
        self._qos = qos
        self._monotonic = monotonic
        self._pending: Dict[str, PendingCommand] = {}
        # tid -> method of recently purged commands, for late-reply diagnostics
        self._expired: "OrderedDict[str, str]" = OrderedDict()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, transaction_id: str) -> bool:
        return transaction_id in self._pending

    async def send(
        self,
        method: str,
        data: Optional[Mapping[str, Any]] = None,
        *,
        topic: str,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Publish a command and wait for its reply.

        Returns:
            The ``data`` object of the matching reply.

        Raises:
            CorrelationTimeout: No reply within ``timeout`` seconds.
            CommandRejected: The reply carried a non-zero ``result``.
            CommandCancelled: The session closed while waiting.
            TransportError: The command could not be published.
        """

        deadline = self._default_timeout if timeout is None else timeout
        envelope = codec.encode_command(method, data)
        if envelope.tid in self._pending:
            raise RuntimeError(f"Transaction id {envelope.tid} is already pending")

        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Dict[str, Any]]" = loop.create_future()
        self._pending[envelope.tid] = PendingCommand(
            transaction_id=envelope.tid,
            business_id=envelope.bid,
            method=method,
            issued_at=self._monotonic(),
            future=future,
        )

        LOGGER.info("Sending command %s (tid=%s) to %s", method, envelope.tid, topic)

        try:
            await self._publish(topic, codec.envelope_to_bytes(envelope), self._qos)
            return await asyncio.wait_for(future, timeout=deadline)
        except asyncio.TimeoutError as exc:
            self._remember_expired(envelope.tid, method)
            LOGGER.warning(
                "Command %s (tid=%s) timed out after %.1fs", method, envelope.tid, deadline
            )
            raise CorrelationTimeout(
                f"No reply to {method} within {deadline:.1f}s",
                transaction_id=envelope.tid,
                method=method,
            ) from exc
        finally:
            self._pending.pop(envelope.tid, None)
            if not future.done():
                future.cancel()
            elif not future.cancelled():
                # An outcome set while the publish was still failing is superseded.
                future.exception()

    def resolve(self, reply: CommandReply) -> bool:
        """Complete the pending command matching ``reply``. Returns True if matched."""

        pending = self._pending.pop(reply.transaction_id, None)
        if pending is None:
            method = self._expired.get(reply.transaction_id)
            if method is not None:
                LOGGER.info(
                    "Discarding late reply to %s (tid=%s)", method, reply.transaction_id
                )
            else:
                LOGGER.debug("Discarding reply with unknown tid=%s", reply.transaction_id)
            return False

        future = pending.future
        if future.done():
            return False

        elapsed = self._monotonic() - pending.issued_at
        result = reply.result
        if result not in (None, 0):
            LOGGER.warning(
                "Command %s (tid=%s) rejected with result=%s",
                pending.method,
                pending.transaction_id,
                result,
            )
            future.set_exception(
                CommandRejected(
                    f"{pending.method} rejected with result {result}",
                    result=result,
                    data=reply.data,
                    transaction_id=pending.transaction_id,
                    method=pending.method,
                )
            )
        else:
            LOGGER.info(
                "Command %s (tid=%s) replied in %.3fs",
                pending.method,
                pending.transaction_id,
                elapsed,
            )
            future.set_result(dict(reply.data))
        return True

    def cancel_all(self, reason: str = "session closed") -> int:
        """Fail every pending command with :class:`CommandCancelled`."""

        pending = list(self._pending.values())
        self._pending.clear()
        for command in pending:
            self._remember_expired(command.transaction_id, command.method)
            if not command.future.done():
                command.future.set_exception(
                    CommandCancelled(
                        f"{command.method} cancelled: {reason}",
                        transaction_id=command.transaction_id,
                        method=command.method,
                    )
                )
        if pending:
            LOGGER.info("Cancelled %d pending command(s): %s", len(pending), reason)
        return len(pending)

    def _remember_expired(self, transaction_id: str, method: str) -> None:
        self._expired[transaction_id] = method
        while len(self._expired) > _EXPIRED_HISTORY:
            self._expired.popitem(last=False)
