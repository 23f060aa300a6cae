from __future__ import annotations

import uvicorn

from fanout.apps.api.main import create_app
from fanout.core.config import get_settings


def main() -> None:
    # The app lifespan builds the engine from the same env-driven settings.
    settings = get_settings()
    uvicorn.run(create_app(settings=settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
