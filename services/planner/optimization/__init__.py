"""
Group trip optimization pipeline.

    normalizer -> selector -> route_constructor -> assembler -> conflicts

Every stage is a plain function/class returning (output, progress notes);
pipeline.OptimizationPipeline runs them in order and publishes progress.

Usage:
    from services.planner.optimization.pipeline import OptimizationPipeline
    from services.planner.optimization.settings import OptimizationSettings
"""
