"""Pipeline execution modules for the opportunity alerts service."""

from .runner import OpportunityPipeline, PipelineRunResult

__all__ = ['OpportunityPipeline', 'PipelineRunResult']
