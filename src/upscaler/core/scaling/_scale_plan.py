from dataclasses import dataclass
from typing import Iterator

from upscaler.core.utils import errors

MAX_STAGE_RATIO = 2


@dataclass(frozen=True)
class ScaleStage:
    source_width: int
    source_height: int
    dest_width: int
    dest_height: int

    @property
    def ratio_x(self) -> float:
        return self.dest_width / self.source_width

    @property
    def ratio_y(self) -> float:
        return self.dest_height / self.source_height

    @property
    def dest_pixels(self) -> int:
        return self.dest_width * self.dest_height


@dataclass(frozen=True)
class ScalePlan:
    """Ordered resampling stages ending exactly at ``(target_width, target_height)``."""

    stages: tuple[ScaleStage, ...]
    target_width: int
    target_height: int

    def __len__(self) -> int:
        return len(self.stages)

    def __iter__(self) -> Iterator[ScaleStage]:
        return iter(self.stages)

    @property
    def peak_stage_pixels(self) -> int:
        return max((stage.dest_pixels for stage in self.stages), default=0)

    def validate(self, source_width: int, source_height: int) -> None:
        """Check the plan can be executed against a source of the given size.

        Raises:
            InvalidPlanError: If the plan is empty, does not start at the source size,
                has stages that do not chain, or does not finish at the target size.
        """
        if not self.stages:
            raise errors.InvalidPlanError("Scale plan has no stages.")

        first = self.stages[0]
        if (first.source_width, first.source_height) != (source_width, source_height):
            raise errors.InvalidPlanError(
                f"Plan starts at {first.source_width}x{first.source_height} "
                f"but source is {source_width}x{source_height}."
            )

        for previous, current in zip(self.stages, self.stages[1:]):
            if (previous.dest_width, previous.dest_height) != (
                current.source_width,
                current.source_height,
            ):
                raise errors.InvalidPlanError("Scale plan stages do not chain.")

        last = self.stages[-1]
        if (last.dest_width, last.dest_height) != (self.target_width, self.target_height):
            raise errors.InvalidPlanError(
                f"Plan ends at {last.dest_width}x{last.dest_height} "
                f"instead of {self.target_width}x{self.target_height}."
            )


def plan_stages(src_w: int, src_h: int, dst_w: int, dst_h: int) -> ScalePlan:
    """Compute the minimal sequence of stages with at most 2x enlargement per axis.

    Each axis is doubled independently (``next = min(current * 2, target)``) until both axes
    reach their target. An axis that reaches its target first is held fixed. Shrinking axes
    reach their target in the first stage.

    Args:
        src_w: Source width.
        src_h: Source height.
        dst_w: Target width.
        dst_h: Target height.

    Returns:
        The scale plan.
    """
    if min(src_w, src_h, dst_w, dst_h) <= 0:
        raise errors.InvalidPlanError(
            f"Cannot plan scaling from {src_w}x{src_h} to {dst_w}x{dst_h}: "
            "dimensions must be positive."
        )

    if max(dst_w / src_w, dst_h / src_h) <= MAX_STAGE_RATIO:
        return ScalePlan((ScaleStage(src_w, src_h, dst_w, dst_h),), dst_w, dst_h)

    stages = []
    current_w, current_h = src_w, src_h
    while (current_w, current_h) != (dst_w, dst_h):
        next_w = min(current_w * MAX_STAGE_RATIO, dst_w)
        next_h = min(current_h * MAX_STAGE_RATIO, dst_h)
        stages.append(ScaleStage(current_w, current_h, next_w, next_h))
        current_w, current_h = next_w, next_h

    return ScalePlan(tuple(stages), dst_w, dst_h)
