"""
HTTP boundary for event producers (aiohttp).

POST /events   -> 202 accepted | 400 invalid request | 503 queue unavailable
GET  /health   -> publisher counters
GET  /metrics  -> Prometheus exposition
"""

from __future__ import annotations

import asyncio
import json
import uuid

from aiohttp import web
from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .producer import EventPublisher

PUBLISHER_KEY = web.AppKey("publisher", EventPublisher)


async def handle_event(request: web.Request) -> web.Response:
    publisher = request.app[PUBLISHER_KEY]
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return web.json_response(
            {"success": False, "correlationId": str(uuid.uuid4()), "error": "malformed JSON body"},
            status=400,
        )

    result = await publisher.publish(body)
    if result.success:
        return web.json_response(
            {"success": True, "correlationId": result.correlation_id, "messageId": result.message_id},
            status=202,
        )
    if result.rejected:
        return web.json_response(
            {"success": False, "correlationId": result.correlation_id, "error": result.error},
            status=400,
        )
    # cause stays in the logs; callers only get the id to quote
    return web.json_response(
        {"success": False, "correlationId": result.correlation_id, "error": "event not queued"},
        status=503,
    )


async def handle_health(request: web.Request) -> web.Response:
    stats = request.app[PUBLISHER_KEY].stats()
    return web.json_response(
        {
            "status": "ok",
            "processed": stats.processed,
            "errors": stats.errors,
            "rejected": stats.rejected,
            "successRate": stats.success_rate,
            "eventsPerSecond": stats.events_per_second,
            "pending": stats.accumulator.pending if stats.accumulator else 0,
        }
    )


async def handle_metrics(request: web.Request) -> web.Response:
    return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})


async def _shutdown_publisher(app: web.Application) -> None:
    await app[PUBLISHER_KEY].shutdown()


def create_app(publisher: EventPublisher, *, close_publisher: bool = True) -> web.Application:
    app = web.Application()
    app[PUBLISHER_KEY] = publisher
    app.router.add_post("/events", handle_event)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/metrics", handle_metrics)
    if close_publisher:
        app.on_cleanup.append(_shutdown_publisher)
    return app


async def serve(publisher: EventPublisher, *, host: str, port: int) -> None:
    """Run the ingest app until cancelled."""
    runner = web.AppRunner(create_app(publisher))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"ingest listening on http://{host}:{port}")
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        logger.info("ingest stopped")
