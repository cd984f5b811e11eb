from __future__ import annotations

import asyncio
import logging
import signal

from cdptunnel.config import Config
from cdptunnel.core import subprocess_tracker
from cdptunnel.core.controller import OrchestrationController

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger("cdptunnel")


async def main() -> int:
    logger.info("cdptunnel starting...")

    config = Config.from_env()
    subprocess_tracker.set_pid_file(config.data_dir / "pids")

    controller = OrchestrationController(config)
    if not controller.check_auth_configured():
        logger.error(
            "ngrok authtoken is not configured. Run `ngrok config add-authtoken <token>` "
            "or set one in %s",
            config.ngrok_config_path or "your ngrok.yml",
        )
        return 1

    # Handle shutdown signals
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    result = await controller.start()
    if not result.success:
        logger.error("Could not start tunnel: %s (%s)", result.error, result.error_type)
        await controller.aclose()
        return 1

    logger.info("Remote debugging available at %s", result.public_url)
    logger.info("DevTools targets: %s/json/list", result.public_url)
    logger.info("cdptunnel is running. Press Ctrl+C to stop.")

    # Wait for shutdown or for the session to end by itself
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=1.0)
        except asyncio.TimeoutError:
            status = controller.get_status()
            if not status.running:
                logger.error("Session ended: %s", status.last_error or "stopped")
                break

    logger.info("Shutting down...")
    await controller.aclose()
    logger.info("cdptunnel stopped.")
    return 0


def run() -> None:
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
