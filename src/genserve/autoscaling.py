from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Protocol

import httpx

from genserve.config import AutoscalingPolicy
from genserve.errors import GenServeError
from genserve.proxy import GenerationEngineProxy
from genserve.telemetry import Telemetry

logger = logging.getLogger(__name__)


class ProbeError(GenServeError):
    pass


@dataclass(frozen=True, slots=True)
class ReplicaMetric:
    replica_id: str
    ongoing_requests: float
    sampled_at: float


class ReplicaProbe(Protocol):
    replica_id: str

    async def ongoing_requests(self) -> int: ...


class LocalReplicaProbe:
    def __init__(self, replica_id: str, proxy: GenerationEngineProxy) -> None:
        self.replica_id = replica_id
        self._proxy = proxy

    async def ongoing_requests(self) -> int:
        return self._proxy.ongoing_request_count()


class HttpReplicaProbe:
    """Reads ``ongoing_requests`` from a replica's ``/health`` endpoint."""

    def __init__(self, replica_id: str, base_url: str, client: httpx.AsyncClient) -> None:
        self.replica_id = replica_id
        self._url = base_url.rstrip("/") + "/health"
        self._client = client

    async def ongoing_requests(self) -> int:
        try:
            response = await self._client.get(self._url)
            response.raise_for_status()
            return int(response.json()["ongoing_requests"])
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            raise ProbeError(f"probe of {self._url} failed: {exc}") from exc


class MetricsWindow:
    """Per-replica samples younger than ``look_back_period_s``."""

    def __init__(self, look_back_period_s: float) -> None:
        self._look_back_period_s = look_back_period_s
        self._samples: dict[str, deque[ReplicaMetric]] = {}

    def record(self, metric: ReplicaMetric) -> None:
        self._samples.setdefault(metric.replica_id, deque()).append(metric)

    def evict(self, now: float) -> None:
        horizon = now - self._look_back_period_s
        for replica_id in list(self._samples):
            samples = self._samples[replica_id]
            while samples and samples[0].sampled_at < horizon:
                samples.popleft()
            if not samples:
                del self._samples[replica_id]

    def forget(self, replica_id: str) -> None:
        self._samples.pop(replica_id, None)

    def replica_average(self, replica_id: str) -> float | None:
        samples = self._samples.get(replica_id)
        if not samples:
            return None
        return sum(sample.ongoing_requests for sample in samples) / len(samples)

    def group_average(self) -> float | None:
        averages = [
            average
            for average in (self.replica_average(replica_id) for replica_id in self._samples)
            if average is not None
        ]
        if not averages:
            return None
        return sum(averages) / len(averages)


@dataclass
class AutoscalingState:
    desired_replicas: int
    above_target_since: float | None = None
    below_target_since: float | None = None
    last_decision_at: float | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "AutoscalingState":
        return cls(
            desired_replicas=int(data["desired_replicas"]),
            above_target_since=data.get("above_target_since"),
            below_target_since=data.get("below_target_since"),
            last_decision_at=data.get("last_decision_at"),
        )


class AutoscalingStateStore:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def load(self) -> AutoscalingState | None:
        if not self._path.exists():
            return None
        with self._path.open("r", encoding="utf-8") as handle:
            return AutoscalingState.from_dict(json.load(handle))

    def save(self, state: AutoscalingState) -> None:
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(state.to_dict(), handle)
        os.replace(tmp_path, self._path)


@dataclass(frozen=True, slots=True)
class ScalingDecision:
    previous_replicas: int
    desired_replicas: int
    average_ongoing_requests: float
    reason: str
    decided_at: float


DecisionCallback = Callable[[ScalingDecision], Awaitable[None]]


class AutoscalingController:
    """Hysteretic replica-count recommender for one replica group.

    Load must stay above (below) target for ``upscale_delay_s``
    (``downscale_delay_s``) before the desired count moves by one replica.
    Crossing the target, or sitting exactly on it, restarts both timers.
    Decisions are advisory; ``on_decision`` is the actuation hook.
    """

    def __init__(
        self,
        policy: AutoscalingPolicy,
        telemetry: Telemetry | None = None,
        on_decision: DecisionCallback | None = None,
        clock: Callable[[], float] = time.time,
        state_store: AutoscalingStateStore | None = None,
    ) -> None:
        self._policy = policy
        self._telemetry = telemetry
        self._on_decision = on_decision
        self._clock = clock
        self._state_store = state_store
        self._window = MetricsWindow(look_back_period_s=policy.look_back_period_s)
        self._probes: dict[str, ReplicaProbe] = {}

        restored = state_store.load() if state_store is not None else None
        if restored is not None:
            logger.info(f"Restored autoscaling state: {restored}")
            self._state = restored
        else:
            self._state = AutoscalingState(desired_replicas=policy.starting_replicas)
        self._state.desired_replicas = self._bounded(self._state.desired_replicas)

        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def desired_replicas(self) -> int:
        return self._state.desired_replicas

    @property
    def state(self) -> AutoscalingState:
        return self._state

    @property
    def window(self) -> MetricsWindow:
        return self._window

    def register(self, probe: ReplicaProbe) -> None:
        self._probes[probe.replica_id] = probe

    def unregister(self, replica_id: str) -> None:
        self._probes.pop(replica_id, None)
        self._window.forget(replica_id)

    async def sample(self) -> list[ReplicaMetric]:
        probes = list(self._probes.values())
        counts = await asyncio.gather(*(self._read_probe(probe) for probe in probes))
        now = self._clock()
        metrics = [
            ReplicaMetric(replica_id=probe.replica_id, ongoing_requests=count, sampled_at=now)
            for probe, count in zip(probes, counts)
            if count is not None
        ]
        for metric in metrics:
            self._window.record(metric)
        self._window.evict(now)
        return metrics

    def evaluate(self) -> ScalingDecision | None:
        now = self._clock()
        state = self._state
        average = self._window.group_average()
        if average is None:
            state.above_target_since = None
            state.below_target_since = None
            self._persist()
            return None

        target = self._policy.target_ongoing_requests_per_replica
        decision = None
        if average > target:
            state.below_target_since = None
            if state.above_target_since is None:
                state.above_target_since = now
            if now - state.above_target_since >= self._policy.upscale_delay_s:
                decision = self._decide(state.desired_replicas + 1, average, now, "above target")
                state.above_target_since = now
        elif average < target:
            state.above_target_since = None
            if state.below_target_since is None:
                state.below_target_since = now
            if now - state.below_target_since >= self._policy.downscale_delay_s:
                decision = self._decide(state.desired_replicas - 1, average, now, "below target")
                state.below_target_since = now
        else:
            state.above_target_since = None
            state.below_target_since = None

        if self._telemetry is not None:
            self._telemetry.set_autoscaler_state(state.desired_replicas, average)
        self._persist()
        return decision

    async def step(self) -> ScalingDecision | None:
        await self.sample()
        decision = self.evaluate()
        if decision is not None and self._on_decision is not None:
            await self._on_decision(decision)
        return decision

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="autoscaling-controller")
        logger.info(
            f"Autoscaling controller started: target={self._policy.target_ongoing_requests_per_replica}, "
            f"replicas=[{self._policy.min_replicas}, {self._policy.max_replicas}], "
            f"interval={self._policy.metrics_interval_s}s"
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Autoscaling controller stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.step()
            except Exception as exc:
                logger.error(f"Error in autoscaling loop: {exc}", exc_info=True)
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self._policy.metrics_interval_s
                )
            except asyncio.TimeoutError:
                pass

    async def _read_probe(self, probe: ReplicaProbe) -> int | None:
        try:
            return await probe.ongoing_requests()
        except ProbeError as exc:
            logger.warning(f"Skipping sample for replica {probe.replica_id}: {exc}")
            return None

    def _decide(self, desired: int, average: float, now: float, reason: str) -> ScalingDecision | None:
        previous = self._state.desired_replicas
        desired = self._bounded(desired)
        if desired == previous:
            return None
        self._state.desired_replicas = desired
        self._state.last_decision_at = now
        logger.info(
            f"Scaling {previous} -> {desired} replicas ({reason}: "
            f"average ongoing requests {average:.2f}, "
            f"target {self._policy.target_ongoing_requests_per_replica})"
        )
        return ScalingDecision(
            previous_replicas=previous,
            desired_replicas=desired,
            average_ongoing_requests=average,
            reason=reason,
            decided_at=now,
        )

    def _bounded(self, replicas: int) -> int:
        return max(self._policy.min_replicas, min(self._policy.max_replicas, replicas))

    def _persist(self) -> None:
        if self._state_store is not None:
            self._state_store.save(self._state)
