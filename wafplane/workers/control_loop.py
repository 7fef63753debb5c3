# wafplane/workers/control_loop.py
from __future__ import annotations

import logging
import signal
import threading

from wafplane.config import settings
from wafplane.workers.control_plane import ControlPlane


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print(
        f"[control-loop] start attack={settings.ATTACK_LOG_PATH} threat={settings.THREAT_LOG_PATH} "
        f"config_dir={settings.CONFIG_DIR}",
        flush=True,
    )

    stop = threading.Event()

    def _handle(signum, _frame) -> None:
        print(f"[control-loop] signal {signum}: stopping", flush=True)
        stop.set()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)

    plane = ControlPlane(settings)
    plane.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        plane.stop()


if __name__ == "__main__":
    main()
