"""Fixtures for the cbfmapper tests.

No FSL installation is needed: ``FakeRunner`` records every command and
writes the files the real tool would have produced.
"""
import subprocess
from pathlib import Path

import nibabel as nib
import numpy as np
import pytest

from cbfmapper.config import load_config
from cbfmapper.utils import fsl
from cbfmapper.utils.commands import CommandRunner, PipelineStageError


def write_nifti(path, shape=(4, 4, 3), value=1.0):
    """Write a small float NIfTI image filled with ``value``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = np.full(shape, value, dtype=np.float32)
    nib.save(nib.Nifti1Image(data, np.eye(4)), str(path))
    return path


def _touch(path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b'fake nifti')


class FakeRunner(CommandRunner):
    """CommandRunner stand-in that materializes declared tool outputs.

    Parameters
    ----------
    fail_on : str, optional
        Executable name whose first call fails with exit status 1
    stats : dict, optional
        fslstats stdout keyed by (mask file name or None, first option)
    n_volumes : int
        Volumes written by fslsplit
    """

    def __init__(self, fail_on=None, stats=None, n_volumes=12):
        super().__init__()
        self.fail_on = fail_on
        self.stats = stats or {}
        self.n_volumes = n_volumes
        self.stages = []

    def check_tools(self, tools):
        return []

    @property
    def tools(self):
        return [cmd[0] for cmd in self.history]

    def run(self, stage, cmd):
        cmd = [str(part) for part in cmd]
        self.history.append(cmd)
        self.stages.append(stage)

        if cmd[0] == self.fail_on:
            raise PipelineStageError(
                stage, f"{cmd[0]} exited with status 1", command=cmd, returncode=1, stderr='boom'
            )

        stdout = getattr(self, '_' + cmd[0])(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout or '', stderr='')

    def _bet(self, cmd):
        _touch(cmd[2])
        if '-F' in cmd:
            out = cmd[2]
            _touch(out.replace('.nii.gz', '_mask.nii.gz'))

    def _fast(self, cmd):
        prefix = Path(cmd[cmd.index('-o') + 1])
        for path in fsl.fast_outputs(prefix).values():
            _touch(path)

    def _flirt(self, cmd):
        _touch(cmd[cmd.index('-out') + 1])

    def _fslmaths(self, cmd):
        _touch(cmd[-1])

    def _fslmerge(self, cmd):
        _touch(cmd[2])

    def _fslsplit(self, cmd):
        prefix = cmd[2]
        for i in range(self.n_volumes):
            _touch(f'{prefix}{i:04d}.nii.gz')

    def _fslstats(self, cmd):
        mask = Path(cmd[cmd.index('-k') + 1]).name if '-k' in cmd else None
        option = [c for c in cmd[2:] if c.startswith('-') and c != '-k'][0]
        default = '1000 8000.000000' if option == '-V' else '1.000000'
        return self.stats.get((mask, option), default) + '\n'

    def _dcm2niix(self, cmd):
        out_dir = Path(cmd[cmd.index('-o') + 1])
        write_nifti(out_dir / 'pCASL_5.nii.gz', shape=(4, 4, 3, self.n_volumes))
        (out_dir / 'pCASL_5.json').write_text('{"RepetitionTime": 4.21}')
        write_nifti(out_dir / 'localizer_1.nii.gz', shape=(4, 4, 3))

    def _oxford_asl(self, cmd):
        out_dir = Path(cmd[cmd.index('-o') + 1])
        _touch(out_dir / 'calib' / 'M0.nii.gz')
        _touch(out_dir / 'native_space' / 'perfusion_calib.nii.gz')
        _touch(out_dir / 'native_space' / 'arrival.nii.gz')


@pytest.fixture
def config():
    return load_config()


@pytest.fixture
def subject_inputs(tmp_path):
    """ASL, PDw and T1w inputs in their own directory."""
    inputs = tmp_path / 'inputs'
    return {
        'asl': write_nifti(inputs / 'asl.nii.gz', shape=(4, 4, 3, 14)),
        'pdw': write_nifti(inputs / 'pdw.nii.gz'),
        't1': write_nifti(inputs / 'T1w_raw.nii.gz', shape=(8, 8, 6)),
    }


@pytest.fixture
def fake_runner():
    return FakeRunner()
