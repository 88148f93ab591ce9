"""Tests for the artifact registry."""
import json
from pathlib import Path

import pytest

from cbfmapper.utils.artifacts import (
    ArtifactRegistry,
    create_multipld_registry,
    create_subject_registry,
)


def _registry(tmp_path, subject_inputs, brain_extraction=True, t1=True):
    return create_subject_registry(
        work_dir=tmp_path / 'work',
        subject='P001',
        subject_dir=tmp_path / 'out' / 'P001',
        asl=subject_inputs['asl'],
        pdw=subject_inputs['pdw'],
        t1=subject_inputs['t1'] if t1 else None,
        brain_extraction=brain_extraction,
    )


def test_paths_are_run_scoped(tmp_path, subject_inputs):
    registry = _registry(tmp_path, subject_inputs)
    assert registry['asl_brain'] == tmp_path / 'work' / 'asl_brain.nii.gz'
    assert registry['wm_mask'] == tmp_path / 'work' / 'CBF_WM_mask.nii.gz'
    assert registry['seg_pve_2'] == tmp_path / 'work' / 'T1w_brain_flirt_pve_2.nii.gz'
    assert registry['fit_perfusion_calib'] == (
        tmp_path / 'work' / 'Oxasl_analysis' / 'native_space' / 'perfusion_calib.nii.gz'
    )
    assert registry['out_cbf'] == tmp_path / 'out' / 'P001' / 'CBF_estimate.nii.gz'
    assert 'out_t1' in registry.outputs()
    assert registry.is_optional('asl_brain_mask')


def test_without_brain_extraction_inputs_are_aliased(tmp_path, subject_inputs):
    registry = _registry(tmp_path, subject_inputs, brain_extraction=False, t1=False)
    assert registry['asl_brain'] == subject_inputs['asl']
    assert registry['pdw_brain'] == subject_inputs['pdw']
    assert registry.kind('asl_brain') == 'external'
    assert subject_inputs['asl'] not in registry.intermediates()
    assert registry['seg_pve_1'].name == 'pdw_brain_wm_pve_1.nii.gz'
    assert 'out_t1' not in registry.outputs()
    assert len(registry.outputs()) == 6


def test_duplicate_name_rejected(tmp_path):
    registry = ArtifactRegistry(tmp_path, 'P001')
    registry.register('pdw_mask', 'pdw_mask.nii.gz')
    with pytest.raises(KeyError, match='already registered'):
        registry.register('pdw_mask', 'other.nii.gz')


def test_unknown_name(tmp_path):
    with pytest.raises(KeyError, match='Unknown artifact'):
        ArtifactRegistry(tmp_path, 'P001')['nope']


def test_cleanup_removes_only_intermediates(tmp_path, subject_inputs):
    registry = _registry(tmp_path, subject_inputs, brain_extraction=False)
    work = tmp_path / 'work'
    (work / 'Oxasl_analysis' / 'calib').mkdir(parents=True)
    (work / 'Oxasl_analysis' / 'calib' / 'M0.nii.gz').write_bytes(b'x')
    registry['pdw_mask'].write_bytes(b'x')
    registry['wm_mask'].write_bytes(b'x')
    out = registry['out_cbf']
    out.parent.mkdir(parents=True)
    out.write_bytes(b'x')

    removed = registry.cleanup()

    assert registry['pdw_mask'] in removed
    assert not (work / 'Oxasl_analysis').exists()
    assert not work.exists()
    assert out.exists()
    assert subject_inputs['asl'].exists()
    assert subject_inputs['pdw'].exists()


def test_cleanup_is_idempotent(tmp_path, subject_inputs):
    registry = _registry(tmp_path, subject_inputs)
    (tmp_path / 'work').mkdir()
    registry['pdw_mask'].write_bytes(b'x')
    registry.cleanup()
    assert registry.cleanup() == []


def test_cleanup_keeps_unknown_files(tmp_path):
    registry = ArtifactRegistry(tmp_path / 'work', 'P001')
    registry.register('a', 'a.nii.gz')
    (tmp_path / 'work').mkdir()
    registry['a'].write_bytes(b'x')
    (tmp_path / 'work' / 'notes.txt').write_text('keep me')
    registry.cleanup()
    assert (tmp_path / 'work' / 'notes.txt').exists()


def test_manifest(tmp_path, subject_inputs):
    registry = _registry(tmp_path, subject_inputs)
    registry.mark_produced('wm_mask')
    manifest = registry.save_manifest(tmp_path / 'artifacts.json')
    data = json.loads(manifest.read_text())
    assert data['subject'] == 'P001'
    assert data['inputs']['asl_input'] == str(subject_inputs['asl'])
    assert data['outputs']['out_cbf'].endswith('CBF_estimate.nii.gz')
    assert 'wm_mask' in data['produced']


def test_multipld_registry(tmp_path):
    registry = create_multipld_registry(tmp_path / 'asl_preprocessing', tmp_path / 'fit', True)
    assert registry['pdw'].name == 'PDw.nii.gz'
    assert registry['merged_pairs_brain'].name == 'merged_tag_control_pairs_brain.nii.gz'
    assert registry.outputs()['fit_dir'] == tmp_path / 'fit'

    no_bet = create_multipld_registry(tmp_path / 'asl_preprocessing', tmp_path / 'fit', False)
    assert no_bet['merged_pairs_brain'] == no_bet['merged_pairs']
    assert no_bet['pdw_brain'] == no_bet['pdw']


def test_cleanup_continues_past_undeletable_files(tmp_path, monkeypatch, caplog):
    registry = ArtifactRegistry(tmp_path / 'work', 'P001')
    registry.register('locked', 'locked.nii.gz')
    registry.register('free', 'free.nii.gz')
    (tmp_path / 'work').mkdir()
    registry['locked'].write_bytes(b'x')
    registry['free'].write_bytes(b'x')

    original_unlink = Path.unlink

    def unlink(self, *args, **kwargs):
        if self.name == 'locked.nii.gz':
            raise PermissionError(13, 'Permission denied', str(self))
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(Path, 'unlink', unlink)

    removed = registry.cleanup()

    assert removed == [registry['free']]
    assert registry['locked'].exists()
    assert (tmp_path / 'work').is_dir()
    assert any('Could not remove' in r.getMessage() for r in caplog.records)
