#!/usr/bin/env python3
"""
Grey / white matter CBF summary statistics.

Computes mean, median and voxel count of the calibrated perfusion map
inside each tissue mask and appends one row per subject to the shared
results table.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import nibabel as nib
import numpy as np
import pandas as pd

from cbfmapper.utils import fsl
from cbfmapper.utils.commands import CommandRunner, PipelineStageError

logger = logging.getLogger(__name__)

STAGE = 'summary_statistics'

RESULT_COLUMNS = [
    'subject', 'wm_mean', 'gm_mean', 'wm_median', 'gm_median', 'wm_voxels', 'gm_voxels'
]

STATS_BACKENDS = ('fslstats', 'nibabel')


@dataclass(frozen=True)
class TissueStats:
    """CBF statistics inside one tissue mask."""

    mean: float
    median: float
    n_voxels: int


@dataclass(frozen=True)
class ResultRecord:
    """One line of the results table."""

    subject: str
    wm: TissueStats
    gm: TissueStats

    def as_row(self) -> List[Union[str, float, int]]:
        return [
            self.subject,
            self.wm.mean, self.gm.mean,
            self.wm.median, self.gm.median,
            self.wm.n_voxels, self.gm.n_voxels,
        ]


def _fslstats_value(runner: CommandRunner, cbf: Path, mask: Path, options) -> float:
    result = runner.run(STAGE, fsl.fslstats(cbf, options, mask=mask))
    try:
        return fsl.parse_fslstats_value(result.stdout)
    except ValueError as e:
        raise PipelineStageError(STAGE, str(e), command=result.args) from e


def tissue_stats_fslstats(runner: CommandRunner, cbf: Path, mask: Path) -> TissueStats:
    """Mean (-M), median (-P 50) and voxel count (-V) via fslstats."""
    return TissueStats(
        mean=_fslstats_value(runner, cbf, mask, ['-M']),
        median=_fslstats_value(runner, cbf, mask, ['-P', 50]),
        n_voxels=int(_fslstats_value(runner, cbf, mask, ['-V'])),
    )


def tissue_stats_nibabel(cbf: Path, mask: Path) -> TissueStats:
    """
    Same statistics computed in-process.

    Follows fslstats -k semantics: only non-zero CBF voxels inside the mask
    enter the mean, the median and the voxel count.

    Raises
    ------
    ValueError
        If the images differ in shape
    """
    cbf_data = nib.load(str(cbf)).get_fdata()
    mask_data = nib.load(str(mask)).get_fdata()

    if cbf_data.shape[:3] != mask_data.shape[:3]:
        raise ValueError(
            f"CBF map {cbf_data.shape} and mask {mask_data.shape} differ in shape"
        )

    in_mask = mask_data > 0
    values = cbf_data[in_mask]
    nonzero = values[values != 0]

    if nonzero.size == 0:
        logger.warning(f"No CBF voxels found in mask {Path(mask).name}")
        return TissueStats(mean=0.0, median=0.0, n_voxels=0)

    return TissueStats(
        mean=float(np.mean(nonzero)),
        median=float(np.median(nonzero)),
        n_voxels=int(nonzero.size),
    )


def compute_tissue_stats(
    cbf: Path,
    mask: Path,
    runner: Optional[CommandRunner] = None,
    backend: str = 'fslstats'
) -> TissueStats:
    """
    CBF statistics inside a mask.

    Parameters
    ----------
    cbf : Path
        Calibrated perfusion map
    mask : Path
        Binary tissue mask
    runner : CommandRunner, optional
        Required by the 'fslstats' backend
    backend : str
        'fslstats' or 'nibabel'
    """
    if backend == 'fslstats':
        if runner is None:
            raise ValueError("The fslstats backend needs a CommandRunner")
        return tissue_stats_fslstats(runner, cbf, mask)
    if backend == 'nibabel':
        return tissue_stats_nibabel(cbf, mask)
    raise ValueError(f"Unknown stats backend: {backend}. Use one of {STATS_BACKENDS}")


def summarize_subject(
    subject: str,
    cbf: Path,
    wm_mask: Path,
    gm_mask: Path,
    runner: Optional[CommandRunner] = None,
    backend: str = 'fslstats'
) -> ResultRecord:
    """GM and WM statistics of one subject."""
    wm = compute_tissue_stats(cbf, wm_mask, runner, backend)
    gm = compute_tissue_stats(cbf, gm_mask, runner, backend)

    logger.info(f"  WM CBF: mean {wm.mean:.2f}, median {wm.median:.2f} (n={wm.n_voxels})")
    logger.info(f"  GM CBF: mean {gm.mean:.2f}, median {gm.median:.2f} (n={gm.n_voxels})")

    return ResultRecord(subject=subject, wm=wm, gm=gm)


def append_result(csv_file: Path, record: ResultRecord) -> Path:
    """
    Append one header-less row to the results table.

    Appends are not synchronized: runs sharing one table must not write
    concurrently.

    Examples
    --------
    >>> append_result(Path('CBF_Analysis_GM_WM.csv'), record)
    # P001,3.2,45.1,3.0,44.8,1000,5000
    """
    csv_file = Path(csv_file)
    csv_file.parent.mkdir(parents=True, exist_ok=True)

    df = pd.DataFrame([record.as_row()], columns=RESULT_COLUMNS)
    df.to_csv(csv_file, mode='a', header=False, index=False)
    logger.info(f"  Results appended to {csv_file}")
    return csv_file


def reset_results(csv_file: Path) -> Path:
    """Start an empty results table for a new batch."""
    csv_file = Path(csv_file)
    csv_file.parent.mkdir(parents=True, exist_ok=True)
    csv_file.write_text('')
    return csv_file


def load_results(csv_file: Path) -> pd.DataFrame:
    """Read a results table back with named columns."""
    csv_file = Path(csv_file)
    if not csv_file.exists() or csv_file.stat().st_size == 0:
        return pd.DataFrame(columns=RESULT_COLUMNS)
    return pd.read_csv(csv_file, header=None, names=RESULT_COLUMNS, dtype={'subject': str})
