"""
cbfmapper: cerebral blood flow maps from arterial spin labeling MRI

Orchestrates dcm2niix, FSL and BASIL (oxford_asl) to estimate CBF from
Siemens pCASL acquisitions.

Modules
-------
workflows : Pipelines
    - Per-subject CBF mapping with GM/WM statistics
    - Multi-PLD CBF/ATT/aCBV mapping from DICOM
    - Cohort runner over a subject manifest
preprocess : Pipeline stages (segmentation, calibration, DICOM handling)
analysis : GM/WM CBF statistics and the results table
utils : External command execution, artifact registry, logging

Usage
-----
>>> from cbfmapper.config import load_config, build_subject_config
>>> from cbfmapper.workflows.subject_cbf import run_subject_cbf
>>> config = load_config('study.yaml')
"""

__version__ = "2.6.0"
__all__ = ['workflows', 'preprocess', 'analysis', 'config', 'utils']
