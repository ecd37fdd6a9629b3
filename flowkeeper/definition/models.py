"""Pydantic models describing workflow definitions."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..contracts import QueueConfig
from ..domain.models import CompensationScope
from ..errors import StepNotFoundError
from ..utils.retry import compute_backoff
from .criteria import AllCriteria, SuccessCriteria, parse_criteria

ConditionFn = Callable[[dict, dict], bool]
ItemsFn = Callable[[dict, dict], Iterable[Any]]
ArgsFactoryFn = Callable[[Any, dict, dict], dict]


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a dotted semantic version string."""
        parts = value.split(".")
        if len(parts) != 3:
            raise ValueError("Semantic version must have three components")
        major, minor, patch = (int(p) for p in parts)
        return cls(major=major, minor=minor, patch=patch)

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


class StepKind(str, Enum):
    SINGLE = "single"
    FAN_OUT = "fan_out"
    POLLING = "polling"


class FailurePolicy(str, Enum):
    FAIL_WORKFLOW = "fail_workflow"
    PAUSE_WORKFLOW = "pause_workflow"
    RETRY_STEP = "retry_step"
    SKIP_STEP = "skip_step"
    CONTINUE_WITH_PARTIAL = "continue_with_partial"


class PollTimeoutPolicy(str, Enum):
    FAIL_STEP = "fail_step"
    PAUSE_WORKFLOW = "pause_workflow"
    CONTINUE_WITH_DEFAULT = "continue_with_default"


class TriggerTimeoutPolicy(str, Enum):
    FAIL_WORKFLOW = "fail_workflow"
    AUTO_RESUME = "auto_resume"
    EXTEND_TIMEOUT = "extend_timeout"


class ResolutionStrategy(str, Enum):
    AUTO_RETRY = "auto_retry"
    AUTO_COMPENSATE = "auto_compensate"
    AWAIT_DECISION = "await_decision"


class RetryConfig(BaseModel):
    """Step-level retry settings used by the ``retry_step`` failure policy."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_seconds: int = 0
    backoff_multiplier: float = 2.0

    def has_reached_max_attempts(self, attempt: int) -> bool:
        return attempt >= self.max_attempts

    def delay_for_attempt(self, attempt: int) -> int:
        return compute_backoff(attempt, self.backoff_seconds, self.backoff_multiplier)


class PollingConfig(BaseModel):
    interval_seconds: int = 300
    max_duration_seconds: int = 86400
    max_attempts: Optional[int] = None
    backoff_multiplier: float = 1.0
    max_interval_seconds: Optional[int] = None
    timeout_policy: PollTimeoutPolicy = PollTimeoutPolicy.FAIL_STEP
    default_output: dict[str, Any] = Field(default_factory=dict)

    def interval_for_attempt(self, attempt: int) -> int:
        """Seconds to wait before poll number ``attempt + 1``."""
        cap = self.max_interval_seconds or self.interval_seconds * 60
        return compute_backoff(
            attempt, self.interval_seconds, self.backoff_multiplier, cap
        )

    def has_exceeded_limits(
        self, attempts: int, started_at: Optional[datetime], now: datetime
    ) -> bool:
        if self.max_attempts is not None and attempts >= self.max_attempts:
            return True
        if started_at is not None:
            return (now - started_at).total_seconds() >= self.max_duration_seconds
        return False


class StepTimeout(BaseModel):
    """Time limits for a step and for each of its jobs.

    ``step_timeout_seconds`` bounds how long a running step may wait for its
    jobs; ``job_timeout_seconds`` is handed to workers with every job.
    """

    step_timeout_seconds: Optional[int] = Field(default=None, ge=0)
    job_timeout_seconds: Optional[int] = Field(default=None, ge=0)

    @property
    def has_step_timeout(self) -> bool:
        return self.step_timeout_seconds is not None

    @property
    def has_job_timeout(self) -> bool:
        return self.job_timeout_seconds is not None


class PauseTrigger(BaseModel):
    """Pause the workflow after a step until an external trigger arrives."""

    trigger_key: str
    timeout_seconds: Optional[int] = None
    timeout_policy: TriggerTimeoutPolicy = TriggerTimeoutPolicy.FAIL_WORKFLOW
    scheduled_resume_seconds: Optional[int] = None
    payload_output: Optional[str] = None


class AutoRetryConfig(BaseModel):
    max_retries: int = 3
    delay_seconds: int = 60
    backoff_multiplier: float = 2.0
    max_delay_seconds: int = 3600
    fallback: Optional[ResolutionStrategy] = ResolutionStrategy.AWAIT_DECISION

    def get_delay_for_retry(self, retry_number: int) -> int:
        return compute_backoff(
            retry_number,
            self.delay_seconds,
            self.backoff_multiplier,
            self.max_delay_seconds,
        )


class FailureResolutionConfig(BaseModel):
    strategy: ResolutionStrategy = ResolutionStrategy.AWAIT_DECISION
    auto_retry: AutoRetryConfig = AutoRetryConfig()
    compensation_scope: CompensationScope = CompensationScope.ALL


class StepDefinition(BaseModel):
    """One step of a workflow definition."""

    key: str
    job: str
    kind: StepKind = StepKind.SINGLE
    description: Optional[str] = None
    arguments: dict[str, Any] = Field(default_factory=dict)
    requires: List[str] = Field(default_factory=list)
    produces: List[str] = Field(default_factory=list)

    # callables receive (payload, outputs); args_factory gets the item first
    condition: Optional[ConditionFn] = None
    items: Optional[ItemsFn] = None
    args_factory: Optional[ArgsFactoryFn] = None

    success_criteria: SuccessCriteria = Field(default_factory=AllCriteria)
    failure_policy: FailurePolicy = FailurePolicy.FAIL_WORKFLOW
    retry: Optional[RetryConfig] = None
    queue: QueueConfig = QueueConfig()

    compensation: Optional[str] = None
    compensation_retry: RetryConfig = RetryConfig()

    polling: Optional[PollingConfig] = None
    pause_trigger: Optional[PauseTrigger] = None
    timeout: StepTimeout = StepTimeout()

    @field_validator("success_criteria", mode="before")
    @classmethod
    def _parse_criteria(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_criteria(v)
        return v

    @model_validator(mode="after")
    def _check_kind(self) -> "StepDefinition":
        if self.kind == StepKind.FAN_OUT and self.items is None:
            raise ValueError(f"fan-out step '{self.key}' requires an items callable")
        if self.kind == StepKind.POLLING and self.polling is None:
            self.polling = PollingConfig()
        return self

    @property
    def has_compensation(self) -> bool:
        return bool(self.compensation)


class WorkflowDefinition(BaseModel):
    """Ordered plan of steps plus workflow-level failure handling."""

    key: str
    version: SemanticVersion = SemanticVersion(major=1, minor=0, patch=0)
    name: Optional[str] = None
    description: Optional[str] = None
    steps: List[StepDefinition] = Field(default_factory=list)
    failure_resolution: FailureResolutionConfig = FailureResolutionConfig()

    @field_validator("version", mode="before")
    @classmethod
    def _parse_version(cls, v: Any) -> Any:
        if isinstance(v, str):
            return SemanticVersion.parse(v)
        return v

    @field_validator("steps")
    @classmethod
    def _unique_keys(cls, v: List[StepDefinition]) -> List[StepDefinition]:
        seen: set[str] = set()
        for step in v:
            if step.key in seen:
                raise ValueError(f"duplicate step key '{step.key}'")
            seen.add(step.key)
        return v

    @property
    def step_keys(self) -> list[str]:
        return [step.key for step in self.steps]

    def get_step(self, key: str) -> Optional[StepDefinition]:
        return next((s for s in self.steps if s.key == key), None)

    def get_step_or_fail(self, key: str) -> StepDefinition:
        step = self.get_step(key)
        if step is None:
            raise StepNotFoundError(self.key, key)
        return step

    def first_step(self) -> Optional[StepDefinition]:
        return self.steps[0] if self.steps else None

    def next_step(self, key: str) -> Optional[StepDefinition]:
        index = self.step_keys.index(key)
        return self.steps[index + 1] if index + 1 < len(self.steps) else None

    def steps_from(self, key: str) -> list[StepDefinition]:
        """Return the step ``key`` and every step after it."""
        self.get_step_or_fail(key)
        return self.steps[self.step_keys.index(key):]
