"""
beacon.engine.funnel — Funnel Step Normalisation & Conversion Math
===================================================================

Pure functions; the database side lives in
:mod:`beacon.services.funnel_service`.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from pydantic import BaseModel, Field

from beacon.engine.records import FunnelStats, FunnelStepStats

__all__ = [
    "FunnelStepInput",
    "FunnelInput",
    "FunnelUpdate",
    "NormalizedStep",
    "normalize_steps",
    "compute_funnel_stats",
]


# ---------------------------------------------------------------------------
# Inbound definitions
# ---------------------------------------------------------------------------
class FunnelStepInput(BaseModel):
    """One step as supplied by the caller; ``order`` is only a sort key."""
    key: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=200)
    order: int | None = None
    page_pattern: str | None = None


class FunnelInput(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    is_active: bool = True
    steps: list[FunnelStepInput]


class FunnelUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    is_active: bool | None = None
    steps: list[FunnelStepInput] | None = None


@dataclass(frozen=True, slots=True)
class NormalizedStep:
    key: str
    name: str
    order: int
    page_pattern: str | None = None


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------
def normalize_steps(steps: Sequence[FunnelStepInput]) -> list[NormalizedStep]:
    """Sort *steps* by caller order and re-number them 0..N-1.

    Steps without an explicit order use their list position.  The sort is
    stable, so ties keep input order.

    Raises
    ------
    ValueError
        If two steps share a key.
    """
    ranked = sorted(
        enumerate(steps),
        key=lambda pair: pair[1].order if pair[1].order is not None else pair[0],
    )
    ordered = [
        NormalizedStep(
            key=step.key,
            name=step.name,
            order=position,
            page_pattern=step.page_pattern,
        )
        for position, (_, step) in enumerate(ranked)
    ]

    seen: set[str] = set()
    for step in ordered:
        if step.key in seen:
            raise ValueError(f"Duplicate step key detected: {step.key}")
        seen.add(step.key)

    return ordered


# ---------------------------------------------------------------------------
# Conversion math
# ---------------------------------------------------------------------------
def compute_funnel_stats(
    funnel_id: str,
    steps: Sequence[NormalizedStep],
    visits_by_step: Mapping[str, int],
) -> FunnelStats:
    """Turn per-step distinct-visitor counts into funnel statistics.

    *steps* must already be in normalised order.  A step converts into the
    next one; the last step converts into itself.
    """
    if not steps:
        return FunnelStats(funnel_id=funnel_id, total_visitors=0, steps=[])

    visits = [int(visits_by_step.get(step.key, 0)) for step in steps]
    results: list[FunnelStepStats] = []

    for index, step in enumerate(steps):
        current = visits[index]
        conversions = visits[index + 1] if index + 1 < len(steps) else current
        rate = round(conversions / current * 100, 2) if current > 0 else 0.0
        results.append(
            FunnelStepStats(
                step_key=step.key,
                name=step.name,
                order=step.order,
                visits=current,
                conversions=conversions,
                drop_off=max(current - conversions, 0),
                conversion_rate=rate,
            )
        )

    return FunnelStats(funnel_id=funnel_id, total_visitors=visits[0], steps=results)
