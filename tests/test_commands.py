"""Tests for the external command runner against real processes."""
import sys

import pytest

from cbfmapper.utils.commands import CommandRunner, PipelineStageError


def test_successful_command_returns_output():
    runner = CommandRunner()
    result = runner.run('brain_mask', [sys.executable, '-c', 'print("3.250000")'])
    assert result.returncode == 0
    assert result.stdout.strip() == '3.250000'
    assert runner.history == [[sys.executable, '-c', 'print("3.250000")']]


def test_non_zero_exit_is_a_stage_failure():
    runner = CommandRunner()
    cmd = [sys.executable, '-c', 'import sys; sys.stderr.write("bad image"); sys.exit(3)']

    with pytest.raises(PipelineStageError) as excinfo:
        runner.run('perfusion_fit', cmd)

    error = excinfo.value
    assert error.stage == 'perfusion_fit'
    assert error.returncode == 3
    assert 'bad image' in error.stderr
    assert error.command == cmd
    assert 'exited with status 3' in str(error)


def test_timeout_is_a_stage_failure():
    runner = CommandRunner(timeout=0.2)

    with pytest.raises(PipelineStageError, match='timed out') as excinfo:
        runner.run('tissue_segmentation', [sys.executable, '-c', 'import time; time.sleep(10)'])

    assert excinfo.value.stage == 'tissue_segmentation'
    assert excinfo.value.returncode is None


def test_missing_executable():
    runner = CommandRunner()
    with pytest.raises(PipelineStageError, match='not found') as excinfo:
        runner.run('brain_extraction', ['definitely-not-a-tool', 'in.nii.gz'])
    assert excinfo.value.command_line == 'definitely-not-a-tool in.nii.gz'


def test_environment_is_passed_to_the_child():
    runner = CommandRunner(env={'FSLOUTPUTTYPE': 'NIFTI_GZ'})
    result = runner.run(
        'calibration', [sys.executable, '-c', 'import os; print(os.environ["FSLOUTPUTTYPE"])']
    )
    assert result.stdout.strip() == 'NIFTI_GZ'


def test_check_tools_reports_missing():
    runner = CommandRunner()
    assert runner.check_tools(['definitely-not-a-tool']) == ['definitely-not-a-tool']
    assert runner.check_tools([sys.executable]) == []
