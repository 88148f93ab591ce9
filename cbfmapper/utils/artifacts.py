#!/usr/bin/env python3
"""
Artifact registry for run-scoped pipeline files.

Maps logical artifact names (e.g. 'wm_mask', 'pdw_calibration') to paths,
computed once per run and shared by every stage. The registry also knows
which files are intermediates, which are final outputs and which are the
user's inputs, so cleanup can never touch the latter two.
"""

import json
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from cbfmapper.utils import fsl

logger = logging.getLogger(__name__)

INTERMEDIATE = 'intermediate'
OUTPUT = 'output'
EXTERNAL = 'external'


class ArtifactRegistry:
    """
    Registry of the files one pipeline run reads and writes.

    Parameters
    ----------
    work_dir : Path
        Run-scoped working directory holding intermediates
    subject : str
        Subject (or run) identifier

    Examples
    --------
    >>> registry = ArtifactRegistry(Path("/data/out/P001_work"), "P001")
    >>> registry.register('pdw_mask', 'pdw_mask.nii.gz')
    >>> registry['pdw_mask']
    PosixPath('/data/out/P001_work/pdw_mask.nii.gz')
    """

    def __init__(self, work_dir: Path, subject: str):
        self.work_dir = Path(work_dir)
        self.subject = subject
        self._paths: Dict[str, Path] = {}
        self._kinds: Dict[str, str] = {}
        self._produced: Dict[str, str] = {}
        self._optional = set()

    def register(self, name: str, filename: str, optional: bool = False) -> Path:
        """
        Register an intermediate file inside the working directory.

        Optional intermediates are by-products no stage depends on; cleanup
        removes them when present.
        """
        if optional:
            self._optional.add(name)
        return self._add(name, self.work_dir / filename, INTERMEDIATE)

    def register_output(self, name: str, path: Path) -> Path:
        """Register a final output that outlives the run."""
        return self._add(name, Path(path), OUTPUT)

    def alias(self, name: str, path: Path) -> Path:
        """Point a logical name at a user-supplied file. Never cleaned up."""
        return self._add(name, Path(path), EXTERNAL)

    def _add(self, name: str, path: Path, kind: str) -> Path:
        if name in self._paths:
            raise KeyError(f"Artifact already registered: {name}")
        self._paths[name] = path
        self._kinds[name] = kind
        return path

    def __getitem__(self, name: str) -> Path:
        try:
            return self._paths[name]
        except KeyError:
            raise KeyError(f"Unknown artifact: {name}") from None

    def __contains__(self, name: str) -> bool:
        return name in self._paths

    def path(self, name: str) -> Path:
        return self[name]

    def kind(self, name: str) -> str:
        return self._kinds[name]

    def exists(self, name: str) -> bool:
        return self[name].exists()

    def is_optional(self, name: str) -> bool:
        return name in self._optional

    def mark_produced(self, name: str) -> None:
        self._produced[name] = datetime.now().isoformat()

    def names(self, kind: Optional[str] = None) -> List[str]:
        return [n for n in self._paths if kind is None or self._kinds[n] == kind]

    def intermediates(self) -> List[Path]:
        return [self._paths[n] for n in self.names(INTERMEDIATE)]

    def outputs(self) -> Dict[str, Path]:
        return {n: self._paths[n] for n in self.names(OUTPUT)}

    def cleanup(self) -> List[Path]:
        """
        Delete every intermediate, then the working directory if empty.

        Missing files are skipped; a path that cannot be removed is logged
        and left in place.

        Returns
        -------
        list of Path
            Paths that were removed
        """
        removed = []
        for path in self.intermediates():
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                elif path.exists():
                    path.unlink()
                else:
                    continue
            except OSError as e:
                logger.warning(f"  Could not remove {path}: {e}")
                continue
            removed.append(path)

        try:
            if self.work_dir.is_dir() and not any(self.work_dir.iterdir()):
                self.work_dir.rmdir()
                removed.append(self.work_dir)
        except OSError as e:
            logger.warning(f"  Could not remove {self.work_dir}: {e}")

        logger.info(f"  Removed {len(removed)} temporary files")
        return removed

    def save_manifest(self, manifest_file: Path) -> Path:
        """Write final outputs and inputs of the run as JSON."""
        manifest = {
            'subject': self.subject,
            'created': datetime.now().isoformat(),
            'inputs': {n: str(self._paths[n]) for n in self.names(EXTERNAL)},
            'outputs': {n: str(p) for n, p in self.outputs().items()},
            'produced': dict(self._produced),
        }
        manifest_file = Path(manifest_file)
        with open(manifest_file, 'w') as f:
            json.dump(manifest, f, indent=2)
        return manifest_file


def register_fast(registry: ArtifactRegistry, name: str, prefix: str) -> None:
    """Register every FAST output under '{name}_{suffix}' (e.g. 'seg_pve_1')."""
    for key, path in fsl.fast_outputs(registry.work_dir / prefix).items():
        registry.register(f'{name}_{key}', path.name)


def create_subject_registry(
    work_dir: Path,
    subject: str,
    subject_dir: Path,
    asl: Path,
    pdw: Path,
    t1: Optional[Path],
    brain_extraction: bool,
    fit_dir_name: str = 'Oxasl_analysis'
) -> ArtifactRegistry:
    """
    Compute every path used by a per-subject CBF run.

    Without brain extraction, 'asl_brain' and 'pdw_brain' refer to the raw
    inputs so later stages consume the unstripped images.
    """
    registry = ArtifactRegistry(work_dir, subject)

    registry.alias('asl_input', asl)
    registry.alias('pdw_input', pdw)

    if brain_extraction:
        registry.register('asl_brain', 'asl_brain.nii.gz')
        registry.register('pdw_brain', 'pdw_brain.nii.gz')
        # bet -F leaves a mask next to its output; nothing reads it
        registry.register('asl_brain_mask', 'asl_brain_mask.nii.gz', optional=True)
    else:
        registry.alias('asl_brain', asl)
        registry.alias('pdw_brain', pdw)

    # Tissue segmentation
    if t1 is not None:
        registry.alias('t1_input', t1)
        registry.register('t1w', 'T1w.nii.gz')
        registry.register('t1w_brain', 'T1w_brain.nii.gz')
        registry.register('t1w_brain_flirt', 'T1w_brain_flirt.nii.gz')
        register_fast(registry, 'seg', 'T1w_brain_flirt')
    else:
        register_fast(registry, 'seg', 'pdw_brain_wm')
    registry.register('wm_mask', 'CBF_WM_mask.nii.gz')
    registry.register('gm_mask', 'CBF_GM_mask.nii.gz')

    # Calibration
    registry.register('pdw_brain_norm', 'pdw_brain_norm.nii.gz')
    registry.register('pdw_brain_norm_wm', 'pdw_brain_norm_wm.nii.gz')
    registry.register('pdw_calibration', 'pdw_calibration.nii.gz')
    registry.register('pdw_mask', 'pdw_mask.nii.gz')

    # Perfusion fit
    registry.register('fit_dir', fit_dir_name)
    registry.register('fit_m0', f'{fit_dir_name}/calib/M0.nii.gz')
    registry.register('fit_perfusion_calib', f'{fit_dir_name}/native_space/perfusion_calib.nii.gz')

    # Final outputs
    subject_dir = Path(subject_dir)
    registry.register_output('out_asl_brain', subject_dir / 'asl_brain.nii.gz')
    registry.register_output('out_wm_mask', subject_dir / 'WM_mask.nii.gz')
    registry.register_output('out_gm_mask', subject_dir / 'GM_mask.nii.gz')
    registry.register_output('out_pdw_brain', subject_dir / 'pdw_brain.nii.gz')
    registry.register_output('out_m0', subject_dir / 'M0.nii.gz')
    registry.register_output('out_cbf', subject_dir / 'CBF_estimate.nii.gz')
    if t1 is not None:
        registry.register_output('out_t1', subject_dir / 'T1.nii.gz')

    return registry


def create_multipld_registry(
    preproc_dir: Path,
    fit_dir: Path,
    brain_extraction: bool
) -> ArtifactRegistry:
    """Compute every path used by a multi-PLD batch run."""
    registry = ArtifactRegistry(preproc_dir, preproc_dir.parent.name)

    registry.register('converted', 'dcm2niix')
    registry.register('asl_raw', 'ASL_raw.nii.gz')
    registry.register('asl_sidecar', 'ASL_config.json', optional=True)
    registry.register('pdw', 'PDw.nii.gz')
    registry.register('merged_pairs', 'merged_tag_control_pairs.nii.gz')

    if brain_extraction:
        registry.register('merged_pairs_brain', 'merged_tag_control_pairs_brain.nii.gz')
        registry.register('merged_pairs_brain_mask', 'merged_tag_control_pairs_brain_mask.nii.gz',
                          optional=True)
        registry.register('pdw_brain', 'PDw_brain.nii.gz')
    else:
        registry.alias('merged_pairs_brain', registry['merged_pairs'])
        registry.alias('pdw_brain', registry['pdw'])

    registry.register_output('fit_dir', fit_dir)
    registry.register_output('fit_perfusion_calib', fit_dir / 'native_space' / 'perfusion_calib.nii.gz')
    return registry
