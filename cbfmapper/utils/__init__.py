"""
Shared utilities for cbfmapper.

Available utilities
-------------------
commands : External command runner and stage errors
fsl : Command builders for dcm2niix, FSL and oxford_asl
artifacts : Run-scoped artifact registry
workflow : Logging and FSL environment helpers
"""

from cbfmapper.utils.artifacts import ArtifactRegistry
from cbfmapper.utils.commands import CommandRunner, PipelineStageError
from cbfmapper.utils.workflow import setup_logging

__all__ = [
    'ArtifactRegistry',
    'CommandRunner',
    'PipelineStageError',
    'setup_logging',
]
