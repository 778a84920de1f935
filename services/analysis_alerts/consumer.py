"""
Sensor Analysis Consumer
Pulls sensor readings from the NATS SENSOR_DATA stream one at a time,
persists them, evaluates the threshold rules and raises deduplicated alerts.

Every message ends in exactly one of:
  ack   - processed (alert created, suppressed or not needed)
  term  - payload can never be processed (malformed, unknown sensor type,
          values the database refuses)
  nak   - infrastructure failure after parsing; JetStream redelivers up to
          NATS_MAX_DELIVER times
"""

import asyncio
import contextlib
import logging
import signal
import time
from enum import Enum
from typing import AsyncIterator, Optional

import asyncpg
import nats
from aiohttp import web
from nats.errors import Error as NatsError
from nats.js.api import AckPolicy, ConsumerConfig, StreamConfig
from nats.js.errors import NotFoundError
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from analysis_alerts.analysis import ProcessingOutcome, SensorAnalysisService
from analysis_alerts.dedup import Created, Suppressed
from analysis_alerts.errors import PayloadRejected
from analysis_alerts.models import parse_sensor_message
from analysis_alerts.stores import PgAlertStore, PgReadingStore
from shared.config import optional_bool, optional_env, optional_float, optional_int, require_env
from shared.logging import configure_logging, log_event, log_exception, trace_context
from shared.metrics import (
    consumer_fetch_errors_total,
    consumer_inflight_messages,
    consumer_messages_total,
    db_pool_free,
    db_pool_size,
    processing_duration_seconds,
)

logger = logging.getLogger("analysis_alerts")

NATS_URL = optional_env("NATS_URL", "nats://localhost:4222")
NATS_STREAM = optional_env("NATS_STREAM", "SENSOR_DATA")
NATS_SUBJECT = optional_env("NATS_SUBJECT", "sensors.readings")
NATS_DURABLE = optional_env("NATS_DURABLE", "analysis-alerts")
NATS_ACK_WAIT_SECONDS = optional_float("NATS_ACK_WAIT_SECONDS", 30.0)
NATS_MAX_RECONNECT_ATTEMPTS = optional_int("NATS_MAX_RECONNECT_ATTEMPTS", 60)
NATS_RECONNECT_WAIT_SECONDS = optional_float("NATS_RECONNECT_WAIT_SECONDS", 2.0)
FETCH_TIMEOUT_SECONDS = optional_float("FETCH_TIMEOUT_SECONDS", 1.0)
FETCH_BACKOFF_MAX_SECONDS = optional_float("FETCH_BACKOFF_MAX_SECONDS", 30.0)
NAK_DELAY_SECONDS = optional_float("NAK_DELAY_SECONDS", 0.0)
# -1 leaves redelivery unbounded.
NATS_MAX_DELIVER = optional_int("NATS_MAX_DELIVER", 20)

DATABASE_URL = optional_env("DATABASE_URL")
PG_HOST = optional_env("PG_HOST", "localhost")
PG_PORT = optional_int("PG_PORT", 5432)
PG_DB = optional_env("PG_DB", "agro_analysis")
PG_USER = optional_env("PG_USER", "agro")
STORE_TIMEOUT_SECONDS = optional_float("STORE_TIMEOUT_SECONDS", 5.0)

SHUTDOWN_GRACE_SECONDS = optional_float("SHUTDOWN_GRACE_SECONDS", 30.0)
HEALTH_PORT = optional_int("HEALTH_PORT", 8080)
REQUIRE_SUSTAINED_DROUGHT = optional_bool("REQUIRE_SUSTAINED_DROUGHT", False)


class MessageState(str, Enum):
    RECEIVED = "RECEIVED"
    PARSED = "PARSED"
    PROCESSED = "PROCESSED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


_RESULT_LABELS = {
    MessageState.ACKNOWLEDGED: "acked",
    MessageState.REJECTED: "rejected",
    MessageState.FAILED: "requeued",
}


def delivery_info(msg) -> tuple[str, int]:
    """(stream sequence, delivery count) of a JetStream message."""
    try:
        metadata = msg.metadata
        return str(metadata.sequence.stream), int(metadata.num_delivered)
    except (AttributeError, NatsError):
        return "", 1


def describe_outcome(outcome: ProcessingOutcome) -> dict:
    context = {
        "reading_id": outcome.reading.id,
        "field_id": outcome.reading.field_id,
        "sensor_type": outcome.reading.sensor_type.value,
        "alert_type": outcome.candidate.type.value if outcome.candidate else None,
    }
    if isinstance(outcome.dedup, Created):
        context["alert"] = "created"
        context["alert_id"] = outcome.dedup.alert.id
    elif isinstance(outcome.dedup, Suppressed):
        context["alert"] = "suppressed"
        context["alert_id"] = outcome.dedup.existing_alert_id
    elif outcome.candidate is not None and not outcome.drought_confirmed:
        context["alert"] = "not_sustained"
    else:
        context["alert"] = "none"
    return context


async def _sleep_or_stop(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class SensorDataConsumer:
    def __init__(self, service: Optional[SensorAnalysisService] = None):
        self._service = service
        self._pool: asyncpg.Pool | None = None
        self._nc = None
        self._stop = asyncio.Event()
        self.acked = 0
        self.rejected = 0
        self.failed = 0

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        if not self._stop.is_set():
            log_event(logger, "shutdown_requested")
        self._stop.set()

    async def init_db(self):
        """Create the DB pool and wire the stores into the analysis service."""
        if DATABASE_URL:
            self._pool = await asyncpg.create_pool(
                dsn=DATABASE_URL, min_size=1, max_size=5, command_timeout=STORE_TIMEOUT_SECONDS
            )
        else:
            self._pool = await asyncpg.create_pool(
                host=PG_HOST,
                port=PG_PORT,
                database=PG_DB,
                user=PG_USER,
                password=require_env("PG_PASS"),
                min_size=1,
                max_size=5,
                command_timeout=STORE_TIMEOUT_SECONDS,
            )
        if self._service is None:
            self._service = SensorAnalysisService(
                PgReadingStore(self._pool, timeout=STORE_TIMEOUT_SECONDS),
                PgAlertStore(self._pool, timeout=STORE_TIMEOUT_SECONDS),
                require_sustained_drought=REQUIRE_SUSTAINED_DROUGHT,
            )

    async def _on_error(self, exc):
        log_event(logger, "nats_error", level="WARNING", error=str(exc))

    async def _on_disconnected(self):
        log_event(logger, "nats_disconnected", level="WARNING")

    async def _on_reconnected(self):
        log_event(logger, "nats_reconnected")

    async def _ensure_stream(self, js) -> None:
        try:
            await js.stream_info(NATS_STREAM)
        except NotFoundError:
            await js.add_stream(StreamConfig(name=NATS_STREAM, subjects=[NATS_SUBJECT]))
            log_event(logger, "stream_created", stream=NATS_STREAM, subject=NATS_SUBJECT)

    @contextlib.asynccontextmanager
    async def open_subscription(self) -> AsyncIterator:
        """Connect to NATS and yield the durable pull subscription.

        The connection is drained on every exit path.
        """
        nc = await nats.connect(
            NATS_URL,
            max_reconnect_attempts=NATS_MAX_RECONNECT_ATTEMPTS,
            reconnect_time_wait=NATS_RECONNECT_WAIT_SECONDS,
            error_cb=self._on_error,
            disconnected_cb=self._on_disconnected,
            reconnected_cb=self._on_reconnected,
        )
        self._nc = nc
        try:
            js = nc.jetstream()
            await self._ensure_stream(js)
            sub = await js.pull_subscribe(
                subject=NATS_SUBJECT,
                durable=NATS_DURABLE,
                stream=NATS_STREAM,
                config=ConsumerConfig(
                    ack_policy=AckPolicy.EXPLICIT,
                    ack_wait=NATS_ACK_WAIT_SECONDS,
                    max_ack_pending=1,
                    max_deliver=NATS_MAX_DELIVER,
                ),
            )
            log_event(logger, "nats_connected", stream=NATS_STREAM, durable=NATS_DURABLE)
            yield sub
        finally:
            self._nc = None
            if not nc.is_closed:
                await nc.drain()
            log_event(logger, "nats_closed")

    async def handle_message(self, msg) -> MessageState:
        """Drive one message to ack, term or nak and return its final state."""
        seq, num_delivered = delivery_info(msg)
        start = time.monotonic()
        with trace_context(seq):
            consumer_inflight_messages.set(1)
            try:
                state = await self._resolve(msg, num_delivered)
            finally:
                consumer_inflight_messages.set(0)
            result = _RESULT_LABELS[state]
            consumer_messages_total.labels(result=result).inc()
            processing_duration_seconds.labels(result=result).observe(
                max(0.0, time.monotonic() - start)
            )
            return state

    async def _resolve(self, msg, num_delivered: int) -> MessageState:
        log_event(
            logger,
            "message_state",
            level="DEBUG",
            state=MessageState.RECEIVED.value,
            num_delivered=num_delivered,
        )
        try:
            message = parse_sensor_message(msg.data)
            reading = message.to_reading()
        except PayloadRejected as exc:
            return await self._reject(msg, exc)

        log_event(logger, "message_state", level="DEBUG", state=MessageState.PARSED.value)
        try:
            outcome = await self._service.process(reading)
        except PayloadRejected as exc:
            return await self._reject(msg, exc)
        except Exception as exc:
            log_exception(
                logger,
                "message_processing_failed",
                exc,
                {
                    "field_id": reading.field_id,
                    "sensor_type": reading.sensor_type.value,
                    "num_delivered": num_delivered,
                },
            )
            if NAK_DELAY_SECONDS > 0:
                await msg.nak(delay=NAK_DELAY_SECONDS)
            else:
                await msg.nak()
            self.failed += 1
            return MessageState.FAILED

        log_event(logger, "message_state", level="DEBUG", state=MessageState.PROCESSED.value)
        await msg.ack()
        self.acked += 1
        log_event(logger, "message_acked", **describe_outcome(outcome))
        return MessageState.ACKNOWLEDGED

    async def _reject(self, msg, exc: PayloadRejected) -> MessageState:
        log_event(
            logger,
            "message_rejected",
            level="WARNING",
            reason=exc.reason,
            error=str(exc),
        )
        await msg.term()
        self.rejected += 1
        return MessageState.REJECTED

    async def consume(self, sub) -> None:
        """Fetch one message at a time until a stop is requested."""
        log_event(logger, "consumer_started", durable=NATS_DURABLE)
        backoff = 0.0
        while not self._stop.is_set():
            try:
                msgs = await sub.fetch(batch=1, timeout=FETCH_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                continue
            except Exception as exc:
                consumer_fetch_errors_total.inc()
                backoff = min(FETCH_BACKOFF_MAX_SECONDS, backoff * 2 if backoff else 0.5)
                log_event(
                    logger,
                    "nats_fetch_error",
                    level="WARNING",
                    error=str(exc),
                    retry_in_seconds=backoff,
                )
                await _sleep_or_stop(self._stop, backoff)
                continue
            backoff = 0.0

            for msg in msgs:
                try:
                    await self.handle_message(msg)
                except Exception as exc:
                    # ack/nak/term itself failed; JetStream redelivers after ack_wait.
                    log_exception(logger, "message_resolution_failed", exc)
        log_event(
            logger,
            "consumer_stopped",
            acked=self.acked,
            rejected=self.rejected,
            failed=self.failed,
        )

    async def _pool_metrics_worker(self):
        while not self._stop.is_set():
            if self._pool is not None:
                db_pool_size.set(self._pool.get_size())
                db_pool_free.set(self._pool.get_idle_size())
            await _sleep_or_stop(self._stop, 5.0)

    def build_health_app(self) -> web.Application:
        app = web.Application()

        async def health_handler(_request):
            return web.json_response(
                {
                    "status": "ok",
                    "service": "analysis_alerts",
                    "counters": {
                        "acked": self.acked,
                        "rejected": self.rejected,
                        "failed": self.failed,
                    },
                }
            )

        async def ready_handler(_request):
            if self._nc and self._nc.is_connected and self._pool and not self.stopping:
                return web.json_response({"status": "ready"})
            return web.json_response({"status": "not_ready"}, status=503)

        async def metrics_handler(_request):
            return web.Response(body=generate_latest(), content_type=CONTENT_TYPE_LATEST.split(";")[0])

        app.router.add_get("/health", health_handler)
        app.router.add_get("/ready", ready_handler)
        app.router.add_get("/metrics", metrics_handler)
        return app

    async def _start_health_server(self) -> web.AppRunner:
        runner = web.AppRunner(self.build_health_app())
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", HEALTH_PORT)
        await site.start()
        log_event(logger, "health server started", service_port=HEALTH_PORT)
        return runner

    async def _consume_until_stopped(self, sub) -> None:
        consume_task = asyncio.create_task(self.consume(sub))
        stop_task = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({consume_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if not consume_task.done():
                # The in-flight message gets the grace period to finish its ack/nak.
                done, _ = await asyncio.wait({consume_task}, timeout=SHUTDOWN_GRACE_SECONDS)
                if not done:
                    log_event(
                        logger,
                        "shutdown_grace_expired",
                        level="WARNING",
                        grace_seconds=SHUTDOWN_GRACE_SECONDS,
                    )
                    consume_task.cancel()
        finally:
            if not consume_task.done():
                consume_task.cancel()
            stop_task.cancel()
            await asyncio.gather(consume_task, stop_task, return_exceptions=True)
        if not consume_task.cancelled() and consume_task.exception() is not None:
            raise consume_task.exception()

    async def run(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)

        await self.init_db()
        runner = None
        metrics_task = None
        try:
            runner = await self._start_health_server()
            metrics_task = asyncio.create_task(self._pool_metrics_worker())
            async with self.open_subscription() as sub:
                await self._consume_until_stopped(sub)
        finally:
            self._stop.set()
            if metrics_task:
                await asyncio.gather(metrics_task, return_exceptions=True)
            if runner:
                await runner.cleanup()
            if self._pool:
                await self._pool.close()
            log_event(
                logger,
                "shutdown_complete",
                acked=self.acked,
                rejected=self.rejected,
                failed=self.failed,
            )


async def main():
    configure_logging("analysis_alerts")
    consumer = SensorDataConsumer()
    await consumer.run()


if __name__ == "__main__":
    asyncio.run(main())
