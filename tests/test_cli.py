"""Tests for the cbfmapper command line."""
import pytest

from cbfmapper import cli

from conftest import FakeRunner


@pytest.fixture
def use_runner(monkeypatch):
    """Route every CLI command through the given FakeRunner."""
    def install(runner):
        monkeypatch.setattr(cli, '_runner', lambda config, timeout: runner)
        return runner
    return install


def _subject_args(subject_inputs, out, sequence='1', t1='1'):
    return [
        'subject', sequence, str(subject_inputs['asl']), str(subject_inputs['pdw']),
        t1, '1', '1', str(out), 'P001',
    ]


def test_invalid_sequence_exits_1(subject_inputs, tmp_path, capsys):
    out = tmp_path / 'out'
    assert cli.main(_subject_args(subject_inputs, out, sequence='7')) == 1
    assert 'You entered an invalid sequence: 7' in capsys.readouterr().out
    assert not out.exists()


def test_non_numeric_sequence_exits_1(subject_inputs, tmp_path, capsys):
    out = tmp_path / 'out'
    assert cli.main(_subject_args(subject_inputs, out, sequence='abc')) == 1
    assert 'Please enter a number for sequence selection' in capsys.readouterr().out
    assert not out.exists()


def test_missing_config_file_exits_1(subject_inputs, tmp_path, capsys):
    args = _subject_args(subject_inputs, tmp_path / 'out') + ['--config', str(tmp_path / 'nope.yaml')]
    assert cli.main(args) == 1
    assert 'Configuration file not found' in capsys.readouterr().out


def test_subject_success(subject_inputs, tmp_path, use_runner, capsys):
    runner = use_runner(FakeRunner())
    out = tmp_path / 'out'

    assert cli.main(_subject_args(subject_inputs, out)) == 0

    assert 'Analysing CBF for the following patient ID: P001' in capsys.readouterr().out
    assert 'oxford_asl' in runner.tools
    assert (out / 'P001' / 'CBF_estimate.nii.gz').exists()
    assert (out / 'CBF_Analysis_GM_WM.csv').exists()


def test_subject_keep_temp(subject_inputs, tmp_path, use_runner):
    use_runner(FakeRunner())
    out = tmp_path / 'out'

    assert cli.main(_subject_args(subject_inputs, out) + ['--keep-temp']) == 0
    assert (out / 'P001_work' / 'pdw_mask.nii.gz').exists()


def test_stage_failure_exits_2(subject_inputs, tmp_path, use_runner, capsys):
    use_runner(FakeRunner(fail_on='fast'))
    out = tmp_path / 'out'

    assert cli.main(_subject_args(subject_inputs, out)) == 2

    printed = capsys.readouterr().out
    assert "stage 'tissue_segmentation'" in printed
    assert 'Command: fast' in printed
    # Intermediates kept for inspection
    assert (out / 'P001_work' / 'pdw_brain.nii.gz').exists()


def test_multipld_command(tmp_path, use_runner):
    runner = use_runner(FakeRunner(n_volumes=22))
    dicom_dir = tmp_path / 'RCAF_007'
    dicom_dir.mkdir()

    assert cli.main(['multipld', str(dicom_dir), '--no-anat', '--cleanup']) == 0
    assert 'bet' not in runner.tools
    assert not (dicom_dir / 'asl_preprocessing').exists()


def test_multipld_missing_directory(tmp_path, capsys):
    assert cli.main(['multipld', str(tmp_path / 'missing')]) == 1
    assert 'DICOM directory not found' in capsys.readouterr().out


def test_cohort_with_failure_exits_2(subject_inputs, tmp_path, use_runner):
    use_runner(FakeRunner())
    manifest = tmp_path / 'subjects.csv'
    manifest.write_text(
        'subject,sequence,asl,pdw,t1,tag_first,bet\n'
        f"P001,0,{subject_inputs['asl']},{subject_inputs['pdw']},,1,1\n"
        f"P002,5,{subject_inputs['asl']},{subject_inputs['pdw']},,1,1\n"
    )

    assert cli.main(['cohort', str(manifest), str(tmp_path / 'out')]) == 2
    assert (tmp_path / 'out' / 'P001' / 'CBF_estimate.nii.gz').exists()


def test_requires_a_command():
    with pytest.raises(SystemExit):
        cli.main([])


def test_cohort_timeout_comes_from_config(subject_inputs, tmp_path, monkeypatch):
    timeouts = []

    def record(config, timeout):
        timeouts.append(timeout)
        return FakeRunner()

    monkeypatch.setattr(cli, '_runner', record)
    study = tmp_path / 'study.yaml'
    study.write_text('execution:\n  timeout: 5\n')
    manifest = tmp_path / 'subjects.csv'
    manifest.write_text(
        'subject,sequence,asl,pdw,t1,tag_first,bet\n'
        f"P001,0,{subject_inputs['asl']},{subject_inputs['pdw']},,1,1\n"
    )

    assert cli.main(['cohort', str(manifest), str(tmp_path / 'out'), '--config', str(study)]) == 0
    assert timeouts == [5.0]

    assert cli.main(['cohort', str(manifest), str(tmp_path / 'out'),
                     '--config', str(study), '--timeout', '30']) == 0
    assert timeouts == [5.0, 30.0]


def test_invalid_stats_backend_exits_1_before_any_tool(subject_inputs, tmp_path, use_runner, capsys):
    runner = use_runner(FakeRunner())
    study = tmp_path / 'study.yaml'
    study.write_text('subject:\n  results:\n    stats_backend: afni\n')
    out = tmp_path / 'out'

    assert cli.main(_subject_args(subject_inputs, out) + ['--config', str(study)]) == 1

    assert 'stats_backend' in capsys.readouterr().out
    assert runner.tools == []
    assert not out.exists()
