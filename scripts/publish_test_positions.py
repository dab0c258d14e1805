#!/usr/bin/env python3
"""
Эмулятор трекеров: публикует позиции участников в брокер.

Запуск:
    python scripts/publish_test_positions.py RACE-1 --participants 5 --interval 1 --count 60
"""

from __future__ import annotations

import argparse
import asyncio
import math
import random
import sys
from datetime import datetime, timezone
from pathlib import Path

project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

from src.common.constants import ParticipantStatus
from src.common.logger import log_info, setup_logging
from src.core.tracking.models import to_wire_timestamp
from src.infra.transport import close_transport, init_transport
from src.services.ingestion.router import get_participant_topic

# Старт круга (центр Москвы)
BASE_LAT = 55.7558
BASE_LNG = 37.6173
TRACK_RADIUS_DEG = 0.01


def make_payload(race_id: str, participant_id: str, step: int, offset: float) -> dict:
    angle = offset + step * 0.05
    return {
        "participant_id": participant_id,
        "race_id": race_id,
        "latitude": round(BASE_LAT + TRACK_RADIUS_DEG * math.sin(angle), 7),
        "longitude": round(BASE_LNG + TRACK_RADIUS_DEG * math.cos(angle), 7),
        "timestamp": to_wire_timestamp(datetime.now(timezone.utc)),
        "status": ParticipantStatus.MOVING.value,
    }


async def publish_positions(race_id: str, participants: int, interval: float, count: int) -> None:
    transport = await init_transport()
    offsets = {f"P{i + 1}": random.uniform(0, 2 * math.pi) for i in range(participants)}

    try:
        for step in range(count):
            for participant_id, offset in offsets.items():
                await transport.publish(
                    get_participant_topic(race_id, participant_id),
                    make_payload(race_id, participant_id, step, offset),
                )
            await log_info(f"Опубликовано {len(offsets)} позиций (шаг {step + 1}/{count})")
            await asyncio.sleep(interval)
    finally:
        await close_transport()


def main() -> None:
    parser = argparse.ArgumentParser(description="Публикация тестовых позиций участников")
    parser.add_argument("race_id")
    parser.add_argument("--participants", type=int, default=3)
    parser.add_argument("--interval", type=float, default=1.0)
    parser.add_argument("--count", type=int, default=30)
    args = parser.parse_args()

    setup_logging()
    asyncio.run(publish_positions(args.race_id, args.participants, args.interval, args.count))


if __name__ == "__main__":
    main()
