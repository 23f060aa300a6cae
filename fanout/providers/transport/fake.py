from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Iterable

from fanout.core.errors import PermanentDeliveryError, TransientDeliveryError


OK = "ok"
TRANSIENT = "transient"
PERMANENT = "permanent"
HANG = "hang"


class FakeTransport:
    """Scripted transport for tests and demos.

    Each recipient replays its script one step per call; once the script runs out
    the ``default`` outcome applies. ``hang`` sleeps past any sane timeout so the
    executor's per-attempt timeout is exercised.
    """

    def __init__(
        self,
        script: dict[str, Iterable[str]] | None = None,
        *,
        default: str = OK,
        delay_s: float = 0.0,
    ) -> None:
        self._script = {recipient: list(steps) for recipient, steps in (script or {}).items()}
        self._default = default
        self._delay_s = delay_s
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.successes: list[str] = []
        self.attempts: dict[str, int] = defaultdict(int)
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, recipient_id: str, *steps: str) -> None:
        self._script[recipient_id] = list(steps)

    def called(self) -> list[str]:
        # Every transport call, failed attempts included.
        return [recipient for recipient, _ in self.calls]

    def delivered(self) -> list[str]:
        return list(self.successes)

    async def deliver(self, recipient_id: str, payload: dict[str, Any]) -> None:
        self.calls.append((recipient_id, payload))
        self.attempts[recipient_id] += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay_s:
                await asyncio.sleep(self._delay_s)
            steps = self._script.get(recipient_id)
            outcome = steps.pop(0) if steps else self._default
            if outcome == TRANSIENT:
                raise TransientDeliveryError("fake_transient")
            if outcome == PERMANENT:
                raise PermanentDeliveryError("fake_invalid_recipient")
            if outcome == HANG:
                await asyncio.sleep(3600)
            self.successes.append(recipient_id)
        finally:
            self.in_flight -= 1

    async def aclose(self) -> None:
        return None
