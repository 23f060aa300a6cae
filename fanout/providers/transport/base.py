from __future__ import annotations

from typing import Any, Protocol


class DeliveryTransport(Protocol):
    """Opaque, possibly slow, possibly flaky delivery capability.

    Returns on success. Raises ``TransientDeliveryError`` for failures worth retrying
    and ``PermanentDeliveryError`` for failures that never will succeed.
    """

    async def deliver(self, recipient_id: str, payload: dict[str, Any]) -> None:
        ...

    async def aclose(self) -> None:
        ...
