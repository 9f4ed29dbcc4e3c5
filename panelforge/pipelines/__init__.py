"""
Panelforge Pipelines Module

The generation stages and the orchestrator that sequences them.
"""

from .executors import StageExecutors, match_uploads
from .orchestrator import GenerationOrchestrator, RunPlan, StageStep

__all__ = [
    'GenerationOrchestrator',
    'RunPlan',
    'StageExecutors',
    'StageStep',
    'match_uploads',
]
