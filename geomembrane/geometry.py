"""
Geometry - slope correction and take-off aggregation for membrane surfaces.

Converts plan-view (projected) surfaces into developed areas using the slope
specification of each entry, and rolls entries up into group subtotals and
project totals.

Everything here is pure: functions read a snapshot of the project and return
fresh result objects.
"""

import math
from dataclasses import dataclass, asdict
from enum import Enum


class EntryCategory(str, Enum):
    SURFACE = "surface"
    ANCHORAGE = "anchorage"


class SurfaceProfile(str, Enum):
    FLAT = "flat"
    SLOPED = "sloped"


class SlopeEncoding(str, Enum):
    PERCENTAGE = "percentage"  # rise as a percentage of run
    RATIO = "ratio"            # run:rise = magnitude:1


# Used wherever a sloped surface has no encoding set (creation, aggregation, export)
DEFAULT_SLOPE_ENCODING = SlopeEncoding.RATIO


# ---------------------------------------------------------------------------
# Slope factor
# ---------------------------------------------------------------------------

def compute_slope_factor(magnitude: float, encoding: SlopeEncoding) -> float:
    """
    Multiplier turning a projected area into the developed (true) area.

    A non-positive magnitude is treated as flat and returns 1.0.
    Percentage: sqrt(1 + (m/100)^2). Ratio m:1: sqrt(1 + (1/m)^2).
    """
    if magnitude <= 0:
        return 1.0
    if encoding == SlopeEncoding.PERCENTAGE:
        return math.sqrt(1 + (magnitude / 100) ** 2)
    return math.sqrt(1 + (1 / magnitude) ** 2)


def slope_label(magnitude: float, encoding: SlopeEncoding) -> str:
    """Short display form of a slope, e.g. '2:1' or '12%'."""
    value = f"{magnitude:g}"
    if encoding == SlopeEncoding.PERCENTAGE:
        return f"{value}%"
    return f"{value}:1"


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GroupResult:
    group_id: str
    surface_subtotal: float
    anchorage_subtotal: float
    group_total: float


@dataclass(frozen=True)
class AggregateResult:
    total_surface_area: float
    total_anchorage_area: float
    grand_total: float
    groups: tuple[GroupResult, ...] = ()

    def for_group(self, group_id: str) -> GroupResult | None:
        for group in self.groups:
            if group.group_id == group_id:
                return group
        return None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["groups"] = [asdict(g) for g in self.groups]
        return data


def surface_factor(entry) -> float:
    """Slope factor of a surface entry (1.0 for flat surfaces)."""
    if entry.profile != SurfaceProfile.SLOPED:
        return 1.0
    return compute_slope_factor(entry.slope_magnitude or 0.0,
                                entry.slope_encoding or DEFAULT_SLOPE_ENCODING)


def entry_area(entry) -> float:
    """Developed area contributed by a single entry, in m²."""
    if entry.category == EntryCategory.SURFACE:
        return (entry.projected_area or 0.0) * surface_factor(entry)
    if entry.category == EntryCategory.ANCHORAGE:
        return (entry.run_length or 0.0) * (entry.developed_width or 0.0)
    return 0.0


def aggregate(groups) -> AggregateResult:
    """
    Roll up an ordered sequence of groups into subtotals and totals.

    Group results keep the input order. Totals are running sums of the
    group subtotals taken in that same order. The input is never modified.
    """
    total_surface = 0.0
    total_anchorage = 0.0
    group_results = []

    for group in groups:
        surface_subtotal = 0.0
        anchorage_subtotal = 0.0

        for entry in group.entries:
            if entry.category == EntryCategory.SURFACE:
                surface_subtotal += entry_area(entry)
            elif entry.category == EntryCategory.ANCHORAGE:
                anchorage_subtotal += entry_area(entry)

        total_surface += surface_subtotal
        total_anchorage += anchorage_subtotal

        group_results.append(GroupResult(
            group_id=group.id,
            surface_subtotal=surface_subtotal,
            anchorage_subtotal=anchorage_subtotal,
            group_total=surface_subtotal + anchorage_subtotal,
        ))

    return AggregateResult(
        total_surface_area=total_surface,
        total_anchorage_area=total_anchorage,
        grand_total=total_surface + total_anchorage,
        groups=tuple(group_results),
    )
