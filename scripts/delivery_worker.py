from __future__ import annotations

from fanout.workers.delivery_worker import main


if __name__ == "__main__":
    # Queue-mode delivery worker: the API enqueues units and this process executes them.
    main()
