from typing import Callable, Optional

import numpy as np
from loguru import logger
from PIL import Image

from upscaler.core.cancellation import CancellationToken
from upscaler.core.utils import errors, image_processing

from ._scale_plan import ScalePlan, plan_stages

StageProgressCallback = Callable[[float, int, int], None]


class ProgressiveScaler:
    def __init__(
        self,
        resample: Image.Resampling = Image.Resampling.LANCZOS,
        pixel_budget: Optional[int] = None,
    ):
        """Resamples buffers through a sequence of stages of at most 2x each.

        Args:
            resample: Pillow filter used for every stage. Defaults to LANCZOS.
            pixel_budget: Largest stage output (in pixels) the scaler will allocate. Plans with a
                larger stage fail with `AllocationError` before the first stage runs. Defaults to None
                (no budget).
        """
        if pixel_budget is not None and pixel_budget <= 0:
            raise ValueError("pixel_budget must be a positive integer.")
        self.resample = resample
        self.pixel_budget = pixel_budget

    @staticmethod
    def plan(src_w: int, src_h: int, dst_w: int, dst_h: int) -> ScalePlan:
        return plan_stages(src_w, src_h, dst_w, dst_h)

    def run(
        self,
        source: np.ndarray,
        plan: ScalePlan,
        on_progress: Optional[StageProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        target: Optional[tuple[int, int]] = None,
    ) -> np.ndarray:
        """Execute a scale plan against a source buffer.

        Only the current stage input and its output are referenced at any time; the output of
        stage *i* becomes the input of stage *i + 1* and the previous buffer is dropped.

        Args:
            source: RGBA8 source buffer. It is never modified.
            plan: Plan computed for the source size.
            on_progress: Called after each stage with ``(fraction_done, stage_index,
                total_stages)``.
            cancel_token: Checked before each stage.
            target: Size ``(width, height)`` originally requested by the caller. When given,
                the plan must end at it.

        Returns:
            The final stage buffer, sized exactly as the plan target.
        """
        source_w, source_h = image_processing.dimensions(source)
        plan.validate(source_w, source_h)
        if target is not None and tuple(target) != (plan.target_width, plan.target_height):
            raise errors.InvalidPlanError(
                f"Plan targets {plan.target_width}x{plan.target_height} "
                f"but {target[0]}x{target[1]} was requested."
            )
        if self.pixel_budget is not None and plan.peak_stage_pixels > self.pixel_budget:
            raise errors.AllocationError(
                f"Plan to {plan.target_width}x{plan.target_height} needs a "
                f"{plan.peak_stage_pixels} pixel stage, above the pixel budget of "
                f"{self.pixel_budget}."
            )

        total_stages = len(plan)
        current = source
        for stage_index, stage in enumerate(plan):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled(
                    f"before stage {stage_index + 1}/{total_stages}"
                )

            current = image_processing.resize(
                current, stage.dest_width, stage.dest_height, self.resample
            )
            logger.debug(
                f"Progressive step {stage_index + 1}/{total_stages}: "
                f"{stage.source_width}x{stage.source_height} -> "
                f"{stage.dest_width}x{stage.dest_height}"
            )

            if on_progress is not None:
                on_progress((stage_index + 1) / total_stages, stage_index, total_stages)

        return current

    def scale(
        self,
        source: np.ndarray,
        width: int,
        height: int,
        on_progress: Optional[StageProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> np.ndarray:
        """Plan and run in one call."""
        source_w, source_h = image_processing.dimensions(source)
        plan = self.plan(source_w, source_h, width, height)
        return self.run(
            source, plan, on_progress, cancel_token=cancel_token, target=(width, height)
        )
