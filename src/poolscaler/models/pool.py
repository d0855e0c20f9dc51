#!/usr/bin/env python3
"""
Pydantic models for pool configuration, reconciler state and scaling decisions
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..errors import InvalidSpec


class ScaleDirection(str, Enum):
    """Direction of a scaling intent"""
    UP = "up"
    DOWN = "down"
    NONE = "none"


class ScaleReason(str, Enum):
    """Why an intent was (or was not) issued"""

    # Actionable reasons
    HIGH_UTILIZATION = "HighUtilization"
    LOW_UTILIZATION = "LowUtilization"
    FAILURE_RECOVERY = "FailureRecovery"
    BOUNDS_CLAMP = "BoundsClamp"

    # Reasons attached to "none" intents
    OPERATION_PENDING = "OperationPending"
    STALE_SAMPLE = "StaleSample"
    INVALID_SAMPLE = "InvalidSample"
    COOLDOWN_ACTIVE = "CooldownActive"
    CIRCUIT_OPEN = "CircuitOpen"
    HYSTERESIS_HOLD = "HysteresisHold"
    AT_BOUNDS = "AtBounds"
    EQUILIBRIUM = "Equilibrium"


class PoolSpec(BaseModel):
    """Immutable bounds and tuning for a single worker pool"""
    model_config = ConfigDict(frozen=True)

    name: str = Field("default", min_length=1, description="Pool identifier")
    min_size: int = Field(..., ge=0, description="Lower bound on ready nodes")
    max_size: int = Field(..., ge=0, description="Upper bound on ready nodes")
    desired_size: int = Field(..., ge=0, description="Initial desired node count")
    scale_up_cooldown: float = Field(60.0, ge=0, description="Seconds between scale-ups")
    scale_down_cooldown: float = Field(300.0, ge=0, description="Seconds between scale-downs")
    target_utilization: float = Field(0.7, gt=0, le=1, description="Utilization the pool is sized for")

    @model_validator(mode="after")
    def _check_bounds(self) -> "PoolSpec":
        if not (self.min_size <= self.desired_size <= self.max_size):
            raise ValueError(
                f"expected min_size <= desired_size <= max_size, got "
                f"{self.min_size} <= {self.desired_size} <= {self.max_size}"
            )
        return self

    @classmethod
    def from_config(cls, data: Dict[str, Any]) -> "PoolSpec":
        """
        Build a spec from configuration values

        Args:
            data: Mapping of PoolSpec field names to values

        Returns:
            Validated PoolSpec

        Raises:
            InvalidSpec: If any field or the bounds invariant is violated
        """
        try:
            return cls(**data)
        except ValidationError as e:
            raise InvalidSpec(_summarize(e), pool=str(data.get("name", ""))) from e


class PoolState(BaseModel):
    """
    Reconciler-owned state of a pool.

    Frozen: every transition returns a new value, so independent pools and
    test harnesses never share a mutable object.
    """
    model_config = ConfigDict(frozen=True)

    current_size: int = Field(..., ge=0, description="Count of ready nodes")
    pending_delta: int = Field(0, description="Signed size change in flight, 0 when idle")
    last_scale_up_at: Optional[datetime] = None
    last_scale_down_at: Optional[datetime] = None
    consecutive_failures: int = Field(0, ge=0)

    # Start of the current below-hysteresis utilization window
    low_utilization_since: Optional[datetime] = None
    # Scale-up is suppressed until this instant
    circuit_open_until: Optional[datetime] = None

    @classmethod
    def initial(cls, observed_size: int) -> "PoolState":
        return cls(current_size=max(0, observed_size))

    @property
    def idle(self) -> bool:
        return self.pending_delta == 0

    def to_snapshot(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible checkpoint"""
        return self.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any]) -> "PoolState":
        return cls.model_validate(data)


class LoadSample(BaseModel):
    """
    Point-in-time load observation produced by a metrics source.

    Range checks are left to the reconciler so that bad samples degrade to a
    no-op decision instead of failing construction deep inside a collector.
    """
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    utilization: float
    pending_work_units: int = 0


class ScaleIntent(BaseModel):
    """Scaling decision handed to an executor"""
    model_config = ConfigDict(frozen=True)

    direction: ScaleDirection
    magnitude: int = Field(0, ge=0)
    reason: ScaleReason
    target_size: Optional[int] = Field(None, ge=0, description="Pool size the intent aims for")

    @classmethod
    def none(cls, reason: ScaleReason) -> "ScaleIntent":
        return cls(direction=ScaleDirection.NONE, magnitude=0, reason=reason)

    @property
    def actionable(self) -> bool:
        return self.direction is not ScaleDirection.NONE and self.magnitude > 0

    @property
    def signed_delta(self) -> int:
        if self.direction is ScaleDirection.UP:
            return self.magnitude
        if self.direction is ScaleDirection.DOWN:
            return -self.magnitude
        return 0


class Succeeded(BaseModel):
    """Executor applied the whole intent"""
    model_config = ConfigDict(frozen=True)
    kind: Literal["succeeded"] = "succeeded"
    new_size: int = Field(..., ge=0)


class PartialSucceeded(BaseModel):
    """Executor applied part of the intent"""
    model_config = ConfigDict(frozen=True)
    kind: Literal["partial"] = "partial"
    new_size: int = Field(..., ge=0)


class Failed(BaseModel):
    """Executor could not apply the intent (including timeouts)"""
    model_config = ConfigDict(frozen=True)
    kind: Literal["failed"] = "failed"
    error: str


Outcome = Annotated[Union[Succeeded, PartialSucceeded, Failed], Field(discriminator="kind")]


def _summarize(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "spec"
        parts.append(f"{location}: {item.get('msg')}")
    return "; ".join(parts)
