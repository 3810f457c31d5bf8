#!/usr/bin/python3.9
# Copyright (c) 2021 MobileCoin Inc.
# Copyright (c) 2021 The Forest Team
import asyncio
import logging
import os
import sys
from typing import Optional

from aiohttp import web
from prometheus_async import aio

from xmtp_relay.errors import RelayError
from xmtp_relay.listener import EthereumRedisListener
from xmtp_relay.service import XMTPService


def log_task_result(task: asyncio.Task) -> None:
    name = task.get_name() + "-" + getattr(task.get_coro(), "__name__", "")
    try:
        result = task.result()
        logging.info("final result of %s was %s", name, result)
    except asyncio.CancelledError:
        logging.info("task %s was cancelled", name)
    except Exception:  # pylint: disable=broad-except
        logging.exception("%s errored", name)


async def no_get(request: web.Request) -> web.Response:
    return web.Response(text="OK")


async def status_handler(request: web.Request) -> web.Response:
    listener: Optional[EthereumRedisListener] = request.app.get("listener")
    if not listener:
        return web.Response(status=504, text="Sorry, no live listener.")
    return web.json_response(listener.status())


async def start_listener(our_app: web.Application) -> None:
    """
    Order of operations: validate config, build the XMTP client, then
    subscribe. Anything failing here is a startup failure.
    """
    try:
        xmtp_service = XMTPService()
        await xmtp_service.start()
    except RelayError as e:
        logging.error("Startup error: %s", e)
        sys.exit(1)
    listener = EthereumRedisListener(xmtp_service)
    our_app["xmtp_service"] = xmtp_service
    our_app["listener"] = listener
    task = asyncio.create_task(listener.start(), name="listener")
    task.add_done_callback(log_task_result)
    our_app["listener_task"] = task
    logging.info("status: %s", listener.status())


async def stop_listener(our_app: web.Application) -> None:
    logging.info("Graceful shutdown initiated")
    task = our_app.get("listener_task")
    if task and not task.done():
        # in-flight relays are abandoned, not awaited
        task.cancel()
        await asyncio.wait([task])
    listener = our_app.get("listener")
    if listener:
        await listener.stop()
    xmtp_service = our_app.get("xmtp_service")
    if xmtp_service:
        await xmtp_service.close()
    logging.info("exited".center(60, "="))


app = web.Application()

app.add_routes(
    [
        web.get("/", no_get),
        web.get("/status", status_handler),
        web.get("/metrics", aio.web.server_stats),
    ]
)


def run_listener(local_app: web.Application = app, port: Optional[int] = None) -> None:
    "run until SIGINT/SIGTERM; both shut down through stop_listener and exit 0"
    local_app.on_startup.append(start_listener)
    local_app.on_cleanup.append(stop_listener)
    port = port or int(os.getenv("PORT") or 8080)
    web.run_app(local_app, port=port, host="0.0.0.0", access_log=None)


if __name__ == "__main__":
    run_listener()
