"""Stream diagnostics — inspect the relay's Redis streams and optionally reset the group.

Usage:
    python -m certsigner.diagnostics [--config path.yaml] [--reset]
"""

from __future__ import annotations

import argparse
import asyncio
import os
from typing import Any

from dotenv import load_dotenv
from redis.asyncio import Redis
from redis.exceptions import ResponseError

from certsigner.clients.redis import RedisClient
from certsigner.config import ACK_TOPIC, RelayConfig, load_config


def _text(raw: Any) -> Any:
    return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw


async def stream_report(raw: Redis, config: RelayConfig) -> dict[str, dict[str, Any]]:
    """Length and consumer-group state for every stream the relay touches."""
    report: dict[str, dict[str, Any]] = {}
    for stream in (config.topics.certify, config.topics.certified, ACK_TOPIC):
        entry: dict[str, Any] = {"length": await raw.xlen(stream), "groups": []}
        try:
            groups = await raw.xinfo_groups(stream)
        except ResponseError:
            # XINFO on a missing key is an error rather than an empty list.
            groups = []
        for g in groups:
            entry["groups"].append({
                "name": _text(g.get("name")),
                "pending": g.get("pending"),
                "consumers": g.get("consumers"),
                "last_delivered": _text(g.get("last-delivered-id")),
            })
        report[stream] = entry
    return report


async def reset_group(raw: Redis, config: RelayConfig) -> bool:
    """Destroy the consumer group; the next worker start re-reads from the oldest entry."""
    try:
        destroyed = await raw.xgroup_destroy(config.topics.certify, config.consumer.group)
    except ResponseError:
        # Stream does not exist yet.
        return False
    return bool(destroyed)


async def main(config_path: str | None = None, reset: bool = False) -> None:
    config = load_config(config_path)
    client = RedisClient(config.redis)
    await client.connect()
    print("Connected OK\n")

    for stream, entry in (await stream_report(client.client, config)).items():
        print(f"{stream}: {entry['length']} messages")
        for g in entry["groups"]:
            print(
                f"  name={g['name']}"
                f"  pending={g['pending']}"
                f"  consumers={g['consumers']}"
                f"  last-delivered={g['last_delivered']}"
            )

    if reset:
        print("\nResetting consumer group...")
        if await reset_group(client.client, config):
            print(f"  Deleted {config.consumer.group}; worker will recreate it on next start.")
        else:
            print(f"  {config.consumer.group} did not exist.")

    await client.close()


if __name__ == "__main__":
    load_dotenv()
    parser = argparse.ArgumentParser(description="Inspect certsigner streams")
    parser.add_argument("--config", default=os.getenv("CERTSIGNER_CONFIG_PATH"))
    parser.add_argument("--reset", action="store_true")
    args = parser.parse_args()
    asyncio.run(main(args.config, reset=args.reset))
