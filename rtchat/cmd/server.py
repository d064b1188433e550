from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

import yaml

from rtchat.server.runtime import ServerRuntime

log = logging.getLogger("rtchat.cmd.server")


async def _run(config: dict) -> None:
    runtime = ServerRuntime(config)
    await runtime.start()
    log.info(
        "Message store %s; push timeout %.1fs, outbox %d frames",
        runtime.db_path, runtime.push_timeout, runtime.outbox_size,
    )

    received: list[str] = []
    done = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        received.append(sig.name)
        done.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except NotImplementedError:
            # no signal handlers on this platform; Ctrl+C surfaces as KeyboardInterrupt
            break

    try:
        await done.wait()
    finally:
        log.info(
            "Shutting down (%s); closing %d live connection(s)",
            received[0] if received else "interrupted", len(runtime.registry),
        )
        await runtime.stop()
        log.info("rtchat server stopped")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="rtchat direct messaging server")
    parser.add_argument("--config", required=True, help="Path to server YAML config")
    parser.add_argument("--listen", help="Override listen address (host:port)")
    args = parser.parse_args(argv)

    config = yaml.safe_load(Path(args.config).read_text()) or {}
    if args.listen:
        config["listen"] = args.listen

    logging.basicConfig(
        level=getattr(logging, str(config.get("log_level", "INFO")).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    asyncio.run(_run(config))


if __name__ == "__main__":
    main()
