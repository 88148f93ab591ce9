#!/usr/bin/env python3
"""
Grey / white matter masks for region-averaged CBF.

Masks are built from a T1w image registered into PDw space when one is
available, otherwise from the PDw image itself (less reliable).
"""

import logging
import shutil
from typing import Any, Dict, Optional

from cbfmapper.utils import fsl
from cbfmapper.utils.artifacts import ArtifactRegistry
from cbfmapper.utils.commands import CommandRunner

logger = logging.getLogger(__name__)

STAGE = 'tissue_segmentation'


def _fast_options(settings: Dict[str, Any]) -> Dict[str, Any]:
    options = dict(settings.get('fast', {}))
    return {
        'image_type': int(options.get('image_type', 3)),
        'n_classes': int(options.get('n_classes', 3)),
        'bias_smoothing': float(options.get('bias_smoothing', 0.1)),
        'iterations': int(options.get('iterations', 4)),
        'bias_lowpass': float(options.get('bias_lowpass', 20.0)),
    }


def _threshold_masks(
    registry: ArtifactRegistry,
    runner: CommandRunner,
    classes: Dict[str, int],
    threshold: float
) -> None:
    for tissue in ('wm', 'gm'):
        pve = registry[f"seg_pve_{int(classes[tissue])}"]
        runner.run(STAGE, fsl.threshold_binarize(pve, registry[f'{tissue}_mask'], threshold))


def segment_from_t1(
    registry: ArtifactRegistry,
    runner: CommandRunner,
    settings: Dict[str, Any],
    bet_settings: Optional[Dict[str, Any]] = None
) -> None:
    """
    T1w route: skull strip, register into PDw space, FAST, threshold.

    Parameters
    ----------
    registry : ArtifactRegistry
        Run registry with 't1_input' aliased
    runner : CommandRunner
        Executes the FSL commands
    settings : dict
        'segmentation' config section
    bet_settings : dict, optional
        'bet' config section (t1_frac, t1_gradient)
    """
    bet_settings = bet_settings or {}

    logger.info("  Locating the T1w image and brain stripping")
    shutil.copyfile(registry['t1_input'], registry['t1w'])
    runner.run(STAGE, fsl.bet(
        registry['t1w'],
        registry['t1w_brain'],
        frac=float(bet_settings.get('t1_frac', 0.5)),
        gradient=bet_settings.get('t1_gradient', 0)
    ))

    logger.info("  Registering the T1w image to the PDw image")
    flirt_opts = settings.get('flirt', {})
    runner.run(STAGE, fsl.flirt(
        registry['t1w_brain'],
        registry['pdw_brain'],
        registry['t1w_brain_flirt'],
        bins=int(flirt_opts.get('bins', 256)),
        cost=flirt_opts.get('cost', 'corratio'),
        search_range=int(flirt_opts.get('search_range', 180)),
        dof=int(flirt_opts.get('dof', 12)),
        interp=flirt_opts.get('interp', 'trilinear')
    ))

    logger.info("  Segmenting the registered T1w image with FAST")
    runner.run(STAGE, fsl.fast(
        registry['t1w_brain_flirt'],
        _fast_prefix(registry),
        **_fast_options(settings)
    ))

    logger.info("  Creating GM and WM masks from the T1w segmentation")
    _threshold_masks(
        registry, runner,
        settings.get('t1_classes', {'wm': 2, 'gm': 1}),
        float(settings.get('threshold', 0.9))
    )


def segment_from_pdw(
    registry: ArtifactRegistry,
    runner: CommandRunner,
    settings: Dict[str, Any]
) -> None:
    """PDw fallback route: FAST directly on the calibration image."""
    logger.warning("Generating GM/WM masks from the PDw image")
    logger.warning("Caution: GM/WM masks estimated from PDw are not ideal, a T1w image is preferred")
    logger.warning("Caution: always QC the GM/WM masks when they are estimated from the PDw image")

    runner.run(STAGE, fsl.fast(
        registry['pdw_brain'],
        _fast_prefix(registry),
        **_fast_options(settings)
    ))

    _threshold_masks(
        registry, runner,
        settings.get('pdw_classes', {'wm': 1, 'gm': 2}),
        float(settings.get('threshold', 0.9))
    )


def _fast_prefix(registry: ArtifactRegistry):
    # seg_seg is {prefix}_seg.nii.gz
    seg = registry['seg_seg']
    return seg.parent / seg.name[:-len('_seg.nii.gz')]


def create_tissue_masks(
    registry: ArtifactRegistry,
    runner: CommandRunner,
    settings: Dict[str, Any],
    bet_settings: Optional[Dict[str, Any]] = None
) -> None:
    """Build 'wm_mask' and 'gm_mask', choosing the route from the registry."""
    if 't1_input' in registry:
        segment_from_t1(registry, runner, settings, bet_settings)
    else:
        segment_from_pdw(registry, runner, settings)
