#!/usr/bin/env python3
"""
Command builders for dcm2niix, FSL and BASIL (oxford_asl).

Each builder returns an argument list; nothing here executes a process.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

# FAST writes {prefix}{suffix}.nii.gz for each of these
FAST_SUFFIXES = (
    '_pve_0', '_pve_1', '_pve_2', '_pveseg', '_seg', '_mixeltype',
)

FSL_TOOLS = ('bet', 'fast', 'flirt', 'fslmaths', 'fslstats', 'oxford_asl')
MULTIPLD_TOOLS = ('dcm2niix', 'fslsplit', 'fslmerge', 'bet', 'oxford_asl')

_NUMBER = re.compile(r'[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?')


def bet(
    in_file: Path,
    out_file: Path,
    frac: float = 0.5,
    gradient: Optional[float] = None,
    functional: bool = False
) -> List[str]:
    """
    Brain extraction.

    Parameters
    ----------
    frac : float
        Fractional intensity threshold (-f)
    gradient : float, optional
        Vertical gradient in threshold (-g); omitted when None
    functional : bool
        Apply to 4D data (-F)
    """
    cmd = ['bet', str(in_file), str(out_file)]
    if functional:
        cmd.append('-F')
    cmd.extend(['-f', f'{frac:g}'])
    if gradient is not None:
        cmd.extend(['-g', f'{gradient:g}'])
    return cmd


def fast(
    in_file: Path,
    out_prefix: Path,
    image_type: int = 3,
    n_classes: int = 3,
    bias_smoothing: float = 0.1,
    iterations: int = 4,
    bias_lowpass: float = 20.0
) -> List[str]:
    """Three-class tissue segmentation."""
    return [
        'fast',
        '-o', str(out_prefix),
        '-t', str(image_type),
        '-n', str(n_classes),
        '-H', f'{bias_smoothing:g}',
        '-I', str(iterations),
        '-l', f'{bias_lowpass:.1f}',
        str(in_file)
    ]


def fast_outputs(out_prefix: Path) -> Dict[str, Path]:
    """Files FAST writes for a given output prefix."""
    out_prefix = Path(out_prefix)
    return {
        suffix.lstrip('_'): out_prefix.parent / f'{out_prefix.name}{suffix}.nii.gz'
        for suffix in FAST_SUFFIXES
    }


def flirt(
    in_file: Path,
    ref_file: Path,
    out_file: Path,
    bins: int = 256,
    cost: str = 'corratio',
    search_range: int = 180,
    dof: int = 12,
    interp: str = 'trilinear'
) -> List[str]:
    """Affine registration of in_file into ref_file space."""
    cmd = [
        'flirt',
        '-in', str(in_file),
        '-ref', str(ref_file),
        '-out', str(out_file),
        '-bins', str(bins),
        '-cost', cost,
    ]
    for axis in ('x', 'y', 'z'):
        cmd.extend([f'-searchr{axis}', str(-search_range), str(search_range)])
    cmd.extend(['-dof', str(dof), '-interp', interp])
    return cmd


def fslmaths(in_file: Path, operations: Sequence[Any], out_file: Path) -> List[str]:
    """fslmaths with an arbitrary operation list, e.g. ``['-thr', 0.9, '-bin']``."""
    return ['fslmaths', str(in_file)] + [str(op) for op in operations] + [str(out_file)]


def threshold_binarize(in_file: Path, out_file: Path, threshold: float = 0.9) -> List[str]:
    return fslmaths(in_file, ['-thr', f'{threshold:g}', '-bin'], out_file)


def binarize(in_file: Path, out_file: Path) -> List[str]:
    return fslmaths(in_file, ['-bin'], out_file)


def fslstats(
    in_file: Path,
    options: Sequence[Any],
    mask: Optional[Path] = None
) -> List[str]:
    """fslstats, optionally restricted to a mask (-k must precede the options)."""
    cmd = ['fslstats', str(in_file)]
    if mask is not None:
        cmd.extend(['-k', str(mask)])
    return cmd + [str(opt) for opt in options]


def parse_fslstats_value(stdout: str) -> float:
    """
    First number printed by fslstats.

    ``-V`` prints ``<voxels> <mm3>``, so this yields the voxel count there.

    Raises
    ------
    ValueError
        If the output holds no number
    """
    match = _NUMBER.search(stdout or '')
    if match is None:
        raise ValueError(f"No numeric value in fslstats output: {stdout!r}")
    return float(match.group(0))


def fslsplit(in_file: Path, out_prefix: str) -> List[str]:
    """Split a 4D series along time into {prefix}0000, {prefix}0001, ..."""
    return ['fslsplit', str(in_file), str(out_prefix), '-t']


def fslmerge(out_file: Path, in_files: Sequence[Path]) -> List[str]:
    """Concatenate 3D volumes along time."""
    return ['fslmerge', '-t', str(out_file)] + [str(f) for f in in_files]


def dcm2niix(dicom_dir: Path, output_dir: Path, filename_format: str = '%p_%s') -> List[str]:
    """DICOM to compressed NIfTI + JSON sidecar."""
    return [
        'dcm2niix',
        '-z', 'y',
        '-f', filename_format,
        '-o', str(output_dir),
        str(dicom_dir)
    ]


def oxford_asl(
    asl_file: Path,
    calib_file: Path,
    out_dir: Path,
    acquisition,
    label_order: str,
    ibf: str = 'rpt',
    mask: Optional[Path] = None,
    pvcorr: bool = False,
    artoff: bool = False
) -> List[str]:
    """
    BASIL kinetic model fit with voxelwise calibration.

    Parameters
    ----------
    asl_file : Path
        Tag/control series
    calib_file : Path
        Calibration (M0) image
    out_dir : Path
        Output directory for oxford_asl
    acquisition : AcquisitionParams
        Bolus, TR, T1 priors, efficiency, ATT prior, repeats and TIs
    label_order : str
        'tc' (tag first) or 'ct' (control first)
    ibf : str
        Input block format: 'rpt' or 'tis'
    mask : Path, optional
        Brain mask for the fit
    pvcorr, artoff : bool
        Partial volume correction / no arterial component
    """
    cmd = [
        'oxford_asl',
        '-i', str(asl_file),
        '--iaf', label_order,
        '--ibf', ibf,
        '--casl',
        '--bolus', f'{acquisition.bolus:g}',
        '--rpts', acquisition.rpts_arg,
        '--tis', acquisition.tis_arg,
        '-c', str(calib_file),
        '--cmethod', 'voxel',
        '--tr', f'{acquisition.tr_pdw:g}',
        '--cgain', '1',
        '-o', str(out_dir),
    ]
    if mask is not None:
        cmd.extend(['-m', str(mask)])
    cmd.extend([
        '--bat', f'{acquisition.att:g}',
        '--t1', f'{acquisition.t1_tissue:g}',
        '--t1b', f'{acquisition.t1_blood:g}',
        '--alpha', f'{acquisition.inversion_efficiency:g}',
        '--spatial',
        '--fixbolus',
        '--mc',
    ])
    if pvcorr:
        cmd.append('--pvcorr')
    if artoff:
        cmd.append('--artoff')
    return cmd
