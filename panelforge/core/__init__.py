"""
Panelforge Core Module

Contains core systems including configuration, constants, exceptions, models and logging.
"""

from .config import PanelforgeConfig, load_config, get_config, set_config
from .constants import *
from .exceptions import *
from .logging_config import setup_logging, get_logger
from .models import (
    Character,
    CharacterReference,
    GeneratedPanel,
    GenerationJob,
    JobError,
    Panel,
    RunInputs,
    Setting,
    StoryAnalysis,
    StoryBreakdown,
    UploadedReference,
)

__all__ = [
    'PanelforgeConfig',
    'load_config',
    'get_config',
    'set_config',
    'setup_logging',
    'get_logger',
    'Character',
    'CharacterReference',
    'GeneratedPanel',
    'GenerationJob',
    'JobError',
    'Panel',
    'RunInputs',
    'Setting',
    'StoryAnalysis',
    'StoryBreakdown',
    'UploadedReference',
]
