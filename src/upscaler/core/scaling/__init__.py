"""Progressive multi-stage resampling."""

from ._scale_plan import ScalePlan, ScaleStage, plan_stages
from ._progressive_scaler import ProgressiveScaler

__all__ = ["ProgressiveScaler", "ScalePlan", "ScaleStage", "plan_stages"]
