"""Success criteria deciding whether a fan-out step with mixed results passed."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class AllCriteria(BaseModel):
    """Every job must succeed."""

    type: Literal["all"] = "all"

    def evaluate(self, succeeded: int, total: int) -> bool:
        return total - succeeded == 0


class MajorityCriteria(BaseModel):
    """More than half of the jobs must succeed."""

    type: Literal["majority"] = "majority"

    def evaluate(self, succeeded: int, total: int) -> bool:
        return succeeded > total / 2


class BestEffortCriteria(BaseModel):
    """At least one job must succeed."""

    type: Literal["best_effort"] = "best_effort"

    def evaluate(self, succeeded: int, total: int) -> bool:
        return succeeded > 0


class NOfMCriteria(BaseModel):
    """At least ``minimum`` jobs must succeed."""

    type: Literal["n_of_m"] = "n_of_m"
    minimum: int = Field(ge=1)

    def evaluate(self, succeeded: int, total: int) -> bool:
        return succeeded >= self.minimum


SuccessCriteria = Annotated[
    Union[AllCriteria, MajorityCriteria, BestEffortCriteria, NOfMCriteria],
    Field(discriminator="type"),
]


def parse_criteria(value: str) -> AllCriteria | MajorityCriteria | BestEffortCriteria | NOfMCriteria:
    """Build criteria from shorthand such as ``"majority"`` or ``"n_of_m:4"``."""
    name, _, argument = value.strip().lower().partition(":")
    if name == "all":
        return AllCriteria()
    if name == "majority":
        return MajorityCriteria()
    if name in ("best_effort", "any"):
        return BestEffortCriteria()
    if name == "n_of_m":
        if not argument:
            raise ValueError("n_of_m criteria require a minimum, e.g. 'n_of_m:3'")
        return NOfMCriteria(minimum=int(argument))
    raise ValueError(f"Unknown success criteria: {value}")
