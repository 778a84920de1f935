#!/usr/bin/env python3
"""
Publish one sensor reading to the SENSOR_DATA stream.

    python3 scripts/publish_reading.py --field-id 5 --sensor-type SoilHumidity --value 15.0

Use --raw to publish an arbitrary payload (e.g. to exercise the reject path).
"""

import argparse
import asyncio
import json
import os
from datetime import datetime, timezone

import nats

NATS_URL = os.getenv("NATS_URL", "nats://localhost:4222")
NATS_SUBJECT = os.getenv("NATS_SUBJECT", "sensors.readings")


def build_payload(field_id: int, sensor_type: str, value: float, timestamp: str | None) -> dict:
    return {
        "fieldId": field_id,
        "sensorType": sensor_type,
        "value": value,
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
    }


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish a sensor reading to NATS JetStream")
    parser.add_argument("--field-id", type=int, default=1)
    parser.add_argument("--sensor-type", default="SoilHumidity")
    parser.add_argument("--value", type=float, default=25.0)
    parser.add_argument("--timestamp", default=None, help="ISO-8601; defaults to now (UTC)")
    parser.add_argument("--raw", default=None, help="publish this string verbatim instead")
    parser.add_argument("--count", type=int, default=1)
    return parser.parse_args(argv)


async def main(argv=None):
    args = parse_args(argv)
    if args.raw is not None:
        data = args.raw.encode()
    else:
        payload = build_payload(args.field_id, args.sensor_type, args.value, args.timestamp)
        data = json.dumps(payload).encode()

    nc = await nats.connect(NATS_URL)
    try:
        js = nc.jetstream()
        for _ in range(args.count):
            ack = await js.publish(NATS_SUBJECT, data, timeout=5.0)
            print(f"published stream={ack.stream} seq={ack.seq} bytes={len(data)}")
    finally:
        await nc.drain()


if __name__ == "__main__":
    asyncio.run(main())
