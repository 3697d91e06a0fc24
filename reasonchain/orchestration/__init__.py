from .pipeline import PipelineResult, PlanProvider, ReasoningPipeline

__all__ = ["PipelineResult", "PlanProvider", "ReasoningPipeline"]
