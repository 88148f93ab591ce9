#!/usr/bin/env python3
"""
DICOM conversion and volume bookkeeping for multi-PLD Siemens pCASL data.

The converted series holds the M0 (PDw) volumes first, followed by the
tag/control pairs of every PLD.
"""

import logging
import shutil
from pathlib import Path
from typing import List

import nibabel as nib

from cbfmapper.utils import fsl
from cbfmapper.utils.artifacts import ArtifactRegistry
from cbfmapper.utils.commands import CommandRunner, PipelineStageError

logger = logging.getLogger(__name__)

SPLIT_PREFIX = 'vol'


def convert_dicoms(dicom_dir: Path, output_dir: Path, runner: CommandRunner) -> List[Path]:
    """
    Convert the DICOM directory with dcm2niix into an empty output directory.

    Files left by an earlier conversion are removed first so that dcm2niix
    never writes suffixed duplicates next to them.

    Returns
    -------
    list of Path
        NIfTI files written by this conversion
    """
    if output_dir.exists():
        shutil.rmtree(output_dir)
    output_dir.mkdir(parents=True)

    logger.info("  Now converting DICOM images to NIfTI")
    runner.run('dicom_conversion', fsl.dcm2niix(dicom_dir, output_dir))
    nifti_files = sorted(output_dir.glob('*.nii.gz')) + sorted(output_dir.glob('*.nii'))
    for nifti in nifti_files:
        logger.info(f"  Converted: {nifti.name}")
    return nifti_files


def _sidecar(nifti_file: Path) -> Path:
    name = nifti_file.name
    stem = name[:-len('.nii.gz')] if name.endswith('.nii.gz') else nifti_file.stem
    return nifti_file.with_name(f'{stem}.json')


def select_asl_series(nifti_files: List[Path]) -> Path:
    """
    Pick the ASL time series among the converted files.

    Raises
    ------
    PipelineStageError
        Unless exactly one converted file is 4D
    """
    candidates = []
    for nifti in nifti_files:
        shape = nib.load(str(nifti)).shape
        if len(shape) == 4 and shape[3] > 1:
            candidates.append(nifti)
        else:
            logger.info(f"  Skipping {nifti.name}: not a time series {shape}")

    if len(candidates) != 1:
        found = ', '.join(p.name for p in candidates) or 'none'
        raise PipelineStageError(
            'collect_series',
            f"expected exactly one 4D ASL series after conversion, found {found}"
        )
    return candidates[0]


def collect_series(dicom_dir: Path, registry: ArtifactRegistry, runner: CommandRunner) -> None:
    """Convert and copy the ASL series (and sidecar) into the preprocessing directory."""
    registry.work_dir.mkdir(parents=True, exist_ok=True)
    nifti_files = convert_dicoms(dicom_dir, registry['converted'], runner)
    asl_series = select_asl_series(nifti_files)

    logger.info(f"  ASL series: {asl_series.name}")
    shutil.copyfile(asl_series, registry['asl_raw'])

    sidecar = _sidecar(asl_series)
    if sidecar.exists():
        shutil.copyfile(sidecar, registry['asl_sidecar'])
    else:
        logger.warning(f"  No JSON sidecar found for {asl_series.name}")


def split_series(registry: ArtifactRegistry, runner: CommandRunner) -> List[Path]:
    """Split the raw series into 3D volumes and register each one."""
    prefix = registry.work_dir / SPLIT_PREFIX
    pattern = f'{SPLIT_PREFIX}[0-9][0-9][0-9][0-9].nii.gz'
    for stale in registry.work_dir.glob(pattern):
        stale.unlink()

    runner.run('split_series', fsl.fslsplit(registry['asl_raw'], prefix))

    volumes = sorted(registry.work_dir.glob(pattern))
    if not volumes:
        raise PipelineStageError('split_series', f"fslsplit produced no volumes in {registry.work_dir}")

    for volume in volumes:
        registry.register(volume.name[:-len('.nii.gz')], volume.name)
    logger.info(f"  {len(volumes)} volumes")
    return volumes


def identify_calibration(
    registry: ArtifactRegistry,
    volumes: List[Path],
    calibration_volumes: int,
    expected_pairs_volumes: int
) -> List[Path]:
    """
    Keep the first volume as PDw, drop the other leading M0 volumes.

    Returns
    -------
    list of Path
        The tag/control volumes, in acquisition order
    """
    if len(volumes) <= calibration_volumes:
        raise PipelineStageError(
            'identify_calibration',
            f"series has {len(volumes)} volumes, fewer than the "
            f"{calibration_volumes} calibration volumes plus tag/control pairs"
        )

    shutil.move(str(volumes[0]), str(registry['pdw']))
    logger.info(f"  PDw image: {volumes[0].name} -> {registry['pdw'].name}")

    for extra in volumes[1:calibration_volumes]:
        extra.unlink()
        logger.info(f"  Discarded calibration volume {extra.name}")

    pairs = volumes[calibration_volumes:]
    if len(pairs) != expected_pairs_volumes:
        logger.warning(
            f"  {len(pairs)} tag/control volumes found but repeats imply "
            f"{expected_pairs_volumes}; check the repeats/tis settings"
        )
    return pairs


def merge_pairs(registry: ArtifactRegistry, runner: CommandRunner, pairs: List[Path]) -> None:
    runner.run('merge_pairs', fsl.fslmerge(registry['merged_pairs'], pairs))
