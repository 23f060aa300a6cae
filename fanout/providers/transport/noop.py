from __future__ import annotations

from typing import Any


class NoopTransport:
    async def deliver(self, recipient_id: str, payload: dict[str, Any]) -> None:
        # Accept every delivery so local runs exercise the full fan-out without a provider.
        _ = recipient_id, payload

    async def aclose(self) -> None:
        return None
