#!/usr/bin/env python3
"""
Sequence-specific preparation of the PDw calibration image.

Supported sequences:

    0  Siemens Prisma 3T pcASL, direct estimate
       (voxelwise calibration with the PDw image as-is)
    1  Siemens Prisma 3T pcASL, Danny Wang sequence (RCAF study)
       (voxelwise calibration, PDw rescaled by its normalized mean WM
       intensity to correct clusters of voxels saturated at 4096)

Adding a sequence means adding a member to :class:`SequenceID` and one
handler to ``CALIBRATION_HANDLERS``.
"""

import logging
import shutil
from enum import IntEnum
from typing import Callable, Dict

from cbfmapper.utils import fsl
from cbfmapper.utils.artifacts import ArtifactRegistry
from cbfmapper.utils.commands import CommandRunner, PipelineStageError

logger = logging.getLogger(__name__)


class SequenceID(IntEnum):
    """Scanner/sequence combinations with a known calibration recipe."""

    PRISMA_DIRECT = 0
    PRISMA_WM_CORRECTED = 1

    @property
    def description(self) -> str:
        return SEQUENCE_DESCRIPTIONS[self]


SEQUENCE_DESCRIPTIONS = {
    SequenceID.PRISMA_DIRECT: 'Siemens 3T pcASL direct estimate',
    SequenceID.PRISMA_WM_CORRECTED: 'Siemens Prisma 3T pcASL (WM intensity correction)',
}

STAGE = 'calibration'


def prepare_direct_calibration(registry: ArtifactRegistry, runner: CommandRunner) -> None:
    """Use the (brain-extracted) PDw image as the calibration image."""
    logger.info("  Using PDw image directly for voxelwise calibration")
    shutil.copyfile(registry['pdw_brain'], registry['pdw_calibration'])


def prepare_wm_corrected_calibration(registry: ArtifactRegistry, runner: CommandRunner) -> float:
    """
    Rescale the PDw image by the mean normalized WM intensity.

    Returns
    -------
    float
        Mean normalized intensity inside the WM mask (the scale factor)
    """
    logger.info("  Normalizing the PDw image")
    runner.run(STAGE, fsl.fslmaths(
        registry['pdw_brain'], ['-inm', 1], registry['pdw_brain_norm']
    ))

    logger.info("  Calculating normalized mean WM intensity from PDw image")
    runner.run(STAGE, fsl.fslmaths(
        registry['pdw_brain_norm'], ['-mul', registry['wm_mask']], registry['pdw_brain_norm_wm']
    ))
    result = runner.run(STAGE, fsl.fslstats(registry['pdw_brain_norm_wm'], ['-M']))

    try:
        wm_mean = fsl.parse_fslstats_value(result.stdout)
    except ValueError as e:
        raise PipelineStageError(STAGE, str(e), command=result.args) from e

    if wm_mean <= 0:
        raise PipelineStageError(
            STAGE, f"Mean WM intensity is {wm_mean}; check the WM mask", command=result.args
        )
    logger.info(f"  Mean normalized WM intensity: {wm_mean:g}")

    logger.info("  Applying WM correction on original PDw image")
    runner.run(STAGE, fsl.fslmaths(
        registry['pdw_brain'], ['-mul', f'{wm_mean:g}'], registry['pdw_calibration']
    ))
    return wm_mean


CALIBRATION_HANDLERS: Dict[SequenceID, Callable[[ArtifactRegistry, CommandRunner], object]] = {
    SequenceID.PRISMA_DIRECT: prepare_direct_calibration,
    SequenceID.PRISMA_WM_CORRECTED: prepare_wm_corrected_calibration,
}


def prepare_calibration(
    sequence: SequenceID,
    registry: ArtifactRegistry,
    runner: CommandRunner
) -> None:
    """Dispatch to the calibration handler of the selected sequence."""
    logger.info(f"  Mode {int(sequence)} selected: {sequence.description}")
    CALIBRATION_HANDLERS[sequence](registry, runner)
