from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from genserve.errors import ConfigurationError

ENGINE_BACKENDS = ("simulated", "vllm")


@dataclass(frozen=True)
class AutoscalingPolicy:
    min_replicas: int = 1
    max_replicas: int = 4
    target_ongoing_requests_per_replica: float = 20.0
    upscale_delay_s: float = 30.0
    downscale_delay_s: float = 600.0
    metrics_interval_s: float = 0.2
    look_back_period_s: float = 2.0
    initial_replicas: int | None = None

    def __post_init__(self) -> None:
        if self.min_replicas < 0:
            raise ConfigurationError("min_replicas must be >= 0")
        if self.max_replicas < max(1, self.min_replicas):
            raise ConfigurationError("max_replicas must be >= max(1, min_replicas)")
        if self.target_ongoing_requests_per_replica <= 0:
            raise ConfigurationError("target_ongoing_requests_per_replica must be positive")
        if self.metrics_interval_s <= 0 or self.look_back_period_s <= 0:
            raise ConfigurationError("metrics_interval_s and look_back_period_s must be positive")
        if self.upscale_delay_s < 0 or self.downscale_delay_s < 0:
            raise ConfigurationError("scaling delays must be >= 0")
        if self.initial_replicas is not None and not (
            self.min_replicas <= self.initial_replicas <= self.max_replicas
        ):
            raise ConfigurationError("initial_replicas must lie within [min_replicas, max_replicas]")

    @property
    def starting_replicas(self) -> int:
        if self.initial_replicas is not None:
            return self.initial_replicas
        return max(1, self.min_replicas)


@dataclass(frozen=True)
class SamplingDefaults:
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 50
    max_tokens: int = 8192


@dataclass(frozen=True)
class ServerConfig:
    model_id: str
    max_model_len: int = 8192
    allowed_context_lengths: frozenset[int] = frozenset({8192, 32768})
    default_context_length: int = 8192
    sampling: SamplingDefaults = field(default_factory=SamplingDefaults)

    engine_backend: str = "simulated"
    tensor_parallel_size: int = 1
    gpu_memory_utilization: float = 0.9
    max_num_seqs: int = 32
    max_num_batched_tokens: int = 32768

    max_concurrent_sequences: int = 100
    max_token_budget: int = 0
    disconnect_poll_interval_s: float = 0.5
    response_role: str = "assistant"
    chat_template: str | None = None

    simulated_decode_step_seconds: float = 0.01
    simulated_idle_sleep_seconds: float = 0.002

    autoscaling: AutoscalingPolicy = field(default_factory=AutoscalingPolicy)

    def __post_init__(self) -> None:
        if not self.model_id:
            raise ConfigurationError("model_id is required")
        if not self.allowed_context_lengths:
            raise ConfigurationError("allowed_context_lengths must not be empty")
        if self.default_context_length not in self.allowed_context_lengths:
            raise ConfigurationError(
                f"default_context_length={self.default_context_length} is not in "
                f"allowed_context_lengths={sorted(self.allowed_context_lengths)}"
            )
        if self.engine_backend not in ENGINE_BACKENDS:
            raise ConfigurationError(
                f"engine_backend must be one of {ENGINE_BACKENDS}, got {self.engine_backend!r}"
            )
        if self.max_model_len <= 0 or self.max_concurrent_sequences <= 0:
            raise ConfigurationError("max_model_len and max_concurrent_sequences must be positive")
        if self.max_token_budget < 0:
            raise ConfigurationError("max_token_budget must be >= 0 (0 disables the budget)")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "ServerConfig":
        env = os.environ if environ is None else environ
        model_id = env.get("MODEL_ID", "").strip()
        if not model_id:
            raise ConfigurationError("MODEL_ID environment variable is not set")

        autoscaling = AutoscalingPolicy(
            min_replicas=_int(env, "AUTOSCALE_MIN_REPLICAS", 1),
            max_replicas=_int(env, "AUTOSCALE_MAX_REPLICAS", 4),
            target_ongoing_requests_per_replica=_float(env, "AUTOSCALE_TARGET_ONGOING_REQUESTS", 20.0),
            upscale_delay_s=_float(env, "AUTOSCALE_UPSCALE_DELAY_S", 30.0),
            downscale_delay_s=_float(env, "AUTOSCALE_DOWNSCALE_DELAY_S", 600.0),
            metrics_interval_s=_float(env, "AUTOSCALE_METRICS_INTERVAL_S", 0.2),
            look_back_period_s=_float(env, "AUTOSCALE_LOOK_BACK_PERIOD_S", 2.0),
        )
        return cls(
            model_id=model_id,
            max_model_len=_int(env, "MAX_MODEL_LEN", 8192),
            allowed_context_lengths=_int_set(env, "ALLOWED_CONTEXT_LENGTHS", "8192,32768"),
            default_context_length=_int(env, "DEFAULT_CONTEXT_LENGTH", 8192),
            sampling=SamplingDefaults(max_tokens=_int(env, "DEFAULT_MAX_TOKENS", 8192)),
            engine_backend=env.get("ENGINE_BACKEND", "simulated").strip().lower(),
            tensor_parallel_size=_int(env, "TENSOR_PARALLEL_SIZE", 1),
            gpu_memory_utilization=_float(env, "GPU_MEMORY_UTILIZATION", 0.9),
            max_num_seqs=_int(env, "MAX_NUM_SEQS", 32),
            max_num_batched_tokens=_int(env, "MAX_NUM_BATCHED_TOKENS", 32768),
            max_concurrent_sequences=_int(env, "MAX_CONCURRENT_SEQUENCES", 100),
            max_token_budget=_int(env, "MAX_TOKEN_BUDGET", 0),
            disconnect_poll_interval_s=_float(env, "DISCONNECT_POLL_INTERVAL_S", 0.5),
            response_role=env.get("RESPONSE_ROLE", "assistant"),
            chat_template=env.get("CHAT_TEMPLATE") or None,
            autoscaling=autoscaling,
        )


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc


def _int_set(env: Mapping[str, str], key: str, default: str) -> frozenset[int]:
    raw = env.get(key) or default
    try:
        return frozenset(int(part) for part in raw.split(",") if part.strip())
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a comma separated list of integers, got {raw!r}") from exc
