import asyncio
import signal
from typing import Any

from loguru import logger

from worker.app.composition import create_worker_dependencies
from worker.app.core import SERVICE_NAME


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


async def run_worker() -> None:
    deps = create_worker_dependencies()
    shutdown = asyncio.Event()

    def request_shutdown() -> None:
        if not shutdown.is_set():
            _log("shutdown_signal")
            shutdown.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_shutdown)
        except NotImplementedError:
            pass

    try:
        await deps.connect()
        await deps.worker.start()
        _log("worker_started", queue=deps.settings.queue_name)
        await shutdown.wait()
    finally:
        await deps.close()
        _log("worker_stopped")


def main() -> None:
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        _log("worker_interrupted")
    except Exception as e:
        logger.exception("worker failed: {}", e)
        raise


if __name__ == "__main__":
    main()
