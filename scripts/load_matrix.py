#!/usr/bin/env python3
"""Mixed streaming/buffered/disconnecting load runner for a genserve replica."""

from __future__ import annotations

import argparse
import asyncio
import json
import random
import time
from dataclasses import dataclass, field

import httpx


@dataclass(frozen=True)
class TrafficProfile:
    name: str
    min_prompt_words: int
    max_prompt_words: int
    min_max_tokens: int
    max_max_tokens: int
    stream: bool
    disconnect_after_lines: int | None
    weight: int


@dataclass
class LoadStats:
    sent: int = 0
    succeeded: int = 0
    rejected_429: int = 0
    disconnected: int = 0
    failed: int = 0
    latencies: list[float] = field(default_factory=list)
    first_line_latencies: list[float] = field(default_factory=list)
    health_samples: list[int] = field(default_factory=list)

    def merge(self, other: "LoadStats") -> None:
        self.sent += other.sent
        self.succeeded += other.succeeded
        self.rejected_429 += other.rejected_429
        self.disconnected += other.disconnected
        self.failed += other.failed
        self.latencies.extend(other.latencies)
        self.first_line_latencies.extend(other.first_line_latencies)
        self.health_samples.extend(other.health_samples)


SCENARIOS: dict[str, list[TrafficProfile]] = {
    "baseline": [
        TrafficProfile("buffered", 20, 120, 16, 64, False, None, 1),
        TrafficProfile("streaming", 20, 120, 16, 64, True, None, 1),
    ],
    "impatient-clients": [
        TrafficProfile("buffered", 20, 200, 32, 128, False, None, 1),
        TrafficProfile("streaming", 20, 200, 32, 128, True, None, 2),
        TrafficProfile("early-disconnect", 200, 800, 256, 512, True, 3, 2),
    ],
    "long-context": [
        TrafficProfile("long-prompt", 4000, 7000, 64, 256, False, None, 1),
        TrafficProfile("streaming", 20, 120, 16, 64, True, None, 3),
    ],
}


def weighted_choice(rng: random.Random, profiles: list[TrafficProfile]) -> TrafficProfile:
    total = sum(profile.weight for profile in profiles)
    pick = rng.randint(1, total)
    cursor = 0
    for profile in profiles:
        cursor += profile.weight
        if pick <= cursor:
            return profile
    return profiles[-1]


def make_prompt(word_count: int) -> str:
    return " ".join(["word"] * word_count)


def percentile(values: list[float], quantile: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(len(ordered) - 1, int(round((len(ordered) - 1) * quantile)))
    return ordered[index]


async def send_streaming(
    client: httpx.AsyncClient, base_url: str, payload: dict, profile: TrafficProfile, stats: LoadStats
) -> None:
    started = time.monotonic()
    async with client.stream("POST", f"{base_url}/", json=payload) as response:
        if response.status_code == 429:
            stats.rejected_429 += 1
            return
        if response.status_code != 200:
            stats.failed += 1
            return
        lines = 0
        async for line in response.aiter_lines():
            if not line:
                continue
            if lines == 0:
                stats.first_line_latencies.append(time.monotonic() - started)
            lines += 1
            if "error" in json.loads(line):
                stats.failed += 1
                return
            if profile.disconnect_after_lines is not None and lines >= profile.disconnect_after_lines:
                # Leaving the context manager closes the connection mid-stream.
                stats.disconnected += 1
                return
    stats.latencies.append(time.monotonic() - started)
    stats.succeeded += 1


async def send_buffered(client: httpx.AsyncClient, base_url: str, payload: dict, stats: LoadStats) -> None:
    started = time.monotonic()
    response = await client.post(f"{base_url}/", json=payload)
    if response.status_code == 200:
        stats.latencies.append(time.monotonic() - started)
        stats.succeeded += 1
    elif response.status_code == 429:
        stats.rejected_429 += 1
    else:
        stats.failed += 1


async def worker(
    worker_id: int,
    base_url: str,
    scenario: str,
    duration_seconds: int,
    target_rps: float,
) -> LoadStats:
    rng = random.Random(worker_id * 7919 + int(time.time()))
    profiles = SCENARIOS[scenario]
    stats = LoadStats()
    started = time.monotonic()

    async with httpx.AsyncClient(timeout=120.0) as client:
        while time.monotonic() - started < duration_seconds:
            profile = weighted_choice(rng, profiles)
            payload = {
                "prompt": make_prompt(rng.randint(profile.min_prompt_words, profile.max_prompt_words)),
                "max_tokens": rng.randint(profile.min_max_tokens, profile.max_max_tokens),
                "stream": profile.stream,
            }

            stats.sent += 1
            try:
                if profile.stream:
                    await send_streaming(client, base_url, payload, profile, stats)
                else:
                    await send_buffered(client, base_url, payload, stats)
            except httpx.HTTPError:
                stats.failed += 1

            if target_rps > 0:
                sleep_time = rng.expovariate(target_rps)
                await asyncio.sleep(min(1.0, sleep_time))

    return stats


async def sample_health(base_url: str, duration_seconds: int, interval_seconds: float) -> LoadStats:
    stats = LoadStats()
    started = time.monotonic()
    async with httpx.AsyncClient(timeout=5.0) as client:
        while time.monotonic() - started < duration_seconds:
            try:
                response = await client.get(f"{base_url}/health")
                stats.health_samples.append(int(response.json()["ongoing_requests"]))
            except (httpx.HTTPError, ValueError, KeyError):
                pass
            await asyncio.sleep(interval_seconds)
    return stats


async def run_load(
    base_url: str,
    scenario: str,
    workers: int,
    duration_seconds: int,
    target_rps: float,
) -> LoadStats:
    tasks = [
        asyncio.create_task(
            worker(
                worker_id=i,
                base_url=base_url,
                scenario=scenario,
                duration_seconds=duration_seconds,
                target_rps=target_rps,
            )
        )
        for i in range(workers)
    ]
    tasks.append(asyncio.create_task(sample_health(base_url, duration_seconds, interval_seconds=0.5)))
    results = await asyncio.gather(*tasks)

    merged = LoadStats()
    for result in results:
        merged.merge(result)
    return merged


def main() -> None:
    parser = argparse.ArgumentParser(description="Run mixed load against a genserve replica.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--scenario", choices=sorted(SCENARIOS), default="impatient-clients")
    parser.add_argument("--workers", type=int, default=20)
    parser.add_argument("--duration-seconds", type=int, default=60)
    parser.add_argument(
        "--target-rps",
        type=float,
        default=2.0,
        help="Approximate request rate per worker",
    )
    args = parser.parse_args()

    stats = asyncio.run(
        run_load(
            base_url=args.base_url,
            scenario=args.scenario,
            workers=args.workers,
            duration_seconds=args.duration_seconds,
            target_rps=args.target_rps,
        )
    )

    report = {
        "scenario": args.scenario,
        "workers": args.workers,
        "duration_seconds": args.duration_seconds,
        "sent": stats.sent,
        "succeeded": stats.succeeded,
        "rejected_429": stats.rejected_429,
        "disconnected": stats.disconnected,
        "failed": stats.failed,
        "success_rate": (stats.succeeded / stats.sent) if stats.sent else 0.0,
        "rejection_rate": (stats.rejected_429 / stats.sent) if stats.sent else 0.0,
        "latency_p50_ms": percentile(stats.latencies, 0.50) * 1000,
        "latency_p95_ms": percentile(stats.latencies, 0.95) * 1000,
        "first_line_p95_ms": percentile(stats.first_line_latencies, 0.95) * 1000,
        "ongoing_requests_peak": max(stats.health_samples, default=0),
    }
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
