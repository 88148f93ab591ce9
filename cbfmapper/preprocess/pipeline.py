#!/usr/bin/env python3
"""
Ordered stage execution for the CBF workflows.

Stages run strictly one after another. After each stage its declared
outputs must exist; the first failure stops the run and leaves every
intermediate file in place for diagnosis.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from cbfmapper.utils.artifacts import ArtifactRegistry
from cbfmapper.utils.commands import PipelineStageError

logger = logging.getLogger(__name__)


@dataclass
class Stage:
    """
    One pipeline step.

    Attributes
    ----------
    name : str
        Stage name used in logs and errors
    func : callable
        Runs the step; takes no arguments
    outputs : sequence of str
        Registry names that must exist once the step returns
    description : str
        Log line announcing the step
    """

    name: str
    func: Callable[[], object]
    outputs: Sequence[str] = ()
    description: str = ''


@dataclass
class PipelineResult:
    name: str
    completed: List[str] = field(default_factory=list)
    outputs: Dict[str, object] = field(default_factory=dict)
    cleaned: bool = False
    value: Optional[object] = None


class Pipeline:
    """
    Linear sequence of stages sharing one artifact registry.

    Parameters
    ----------
    name : str
        Pipeline name for logs
    registry : ArtifactRegistry
        Paths of the run
    cleanup : bool
        Remove intermediates after a successful run

    Examples
    --------
    >>> pipeline = Pipeline('subject-cbf', registry, cleanup=True)
    >>> pipeline.add('brain_mask', make_mask, outputs=['pdw_mask'])
    >>> result = pipeline.run()
    """

    def __init__(self, name: str, registry: ArtifactRegistry, cleanup: bool = False):
        self.name = name
        self.registry = registry
        self.cleanup = cleanup
        self.stages: List[Stage] = []
        self.failed_stage: Optional[str] = None

    def add(
        self,
        name: str,
        func: Callable[[], object],
        outputs: Sequence[str] = (),
        description: str = ''
    ) -> Stage:
        for output in outputs:
            # Fail at build time on a typo, not halfway through a run
            self.registry[output]
        stage = Stage(name, func, tuple(outputs), description)
        self.stages.append(stage)
        return stage

    def run(self) -> PipelineResult:
        """
        Execute all stages in order.

        Returns
        -------
        PipelineResult
            Completed stage names and the value returned by the last stage

        Raises
        ------
        PipelineStageError
            From the first stage that fails; later stages and cleanup are skipped
        """
        result = PipelineResult(self.name)
        n_stages = len(self.stages)

        for index, stage in enumerate(self.stages, start=1):
            logger.info(f"[{index}/{n_stages}] {stage.description or stage.name}")
            try:
                result.value = stage.func()
                self._check_outputs(stage)
            except PipelineStageError as e:
                self._fail(stage, e)
                raise
            except (OSError, ValueError) as e:
                self._fail(stage, e)
                raise PipelineStageError(stage.name, str(e)) from e
            result.completed.append(stage.name)

        if self.cleanup:
            logger.info("Cleaning temp files")
            self.registry.cleanup()
            result.cleaned = True

        result.outputs = dict(self.registry.outputs())
        return result

    def _check_outputs(self, stage: Stage) -> None:
        missing = [name for name in stage.outputs if not self.registry.exists(name)]
        if missing:
            paths = ', '.join(str(self.registry[name]) for name in missing)
            raise PipelineStageError(stage.name, f"expected output not produced: {paths}")
        for name in stage.outputs:
            self.registry.mark_produced(name)

    def _fail(self, stage: Stage, error: Exception) -> None:
        self.failed_stage = stage.name
        logger.error(f"Stage '{stage.name}' failed: {error}")
        command = getattr(error, 'command_line', '')
        if command:
            logger.error(f"  Command: {command}")
        logger.error("Remaining stages skipped; intermediate files kept for inspection")
