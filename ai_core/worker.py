# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the MobileOps project

"""Placeholder serving process launched by the built-in backends.

Model inference is out of scope; the worker holds its slot in the process
table, optionally answers ``GET /health`` and exits cleanly on SIGTERM or
SIGINT. Configure a native serving command per engine to replace it.

Usage:
    python -m ai_core.worker --engine onnx --model /models/bert-base.onnx [--port 9001]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import time

from aiohttp import web

logger = logging.getLogger("ai_core.worker")


def build_app(engine: str, model: str | None) -> web.Application:
    started = time.time()

    async def health(request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "engine": engine,
                "model": model,
                "uptime": round(time.time() - started, 1),
            }
        )

    app = web.Application()
    app.router.add_get("/health", health)
    return app


async def serve(engine: str, model: str | None, host: str, port: int | None) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, stop.set)

    runner: web.AppRunner | None = None
    if port is not None:
        runner = web.AppRunner(build_app(engine, model))
        await runner.setup()
        await web.TCPSite(runner, host, port).start()
        logger.info("Health endpoint listening on http://%s:%d/health", host, port)

    logger.info("Engine %s started (model=%s)", engine, model or "-")
    try:
        await stop.wait()
    finally:
        if runner is not None:
            await runner.cleanup()
    logger.info("Engine %s stopping", engine)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="ai_core.worker", description=__doc__.splitlines()[0])
    parser.add_argument("--engine", required=True, help="Engine type")
    parser.add_argument("--model", help="Model storage path")
    parser.add_argument("--host", default="127.0.0.1", help="Health endpoint address")
    parser.add_argument("--port", type=int, help="Serve GET /health on this port")
    args, _extra = parser.parse_known_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(serve(args.engine, args.model, args.host, args.port))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
