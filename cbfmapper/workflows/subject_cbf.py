#!/usr/bin/env python3
"""
Per-subject CBF mapping workflow.

Inputs are an already-split ASL tag/control series, a PDw calibration image
and optionally a T1w image. Steps:

1. Brain extraction of ASL and PDw (optional)
2. GM/WM masks from T1w (registered to PDw) or from PDw
3. Sequence-specific calibration image
4. Brain mask from the calibration image
5. Perfusion model fit with oxford_asl (voxelwise calibration)
6. Copy of the final images to {output_dir}/{subject}/
7. GM/WM CBF statistics appended to the shared CSV
8. Removal of temporary files (optional, only after success)
"""

import logging
import shutil
from typing import Optional

from cbfmapper.analysis.tissue_stats import append_result, summarize_subject
from cbfmapper.config import ConfigurationError, SubjectRunConfig
from cbfmapper.preprocess.calibration import prepare_calibration
from cbfmapper.preprocess.pipeline import Pipeline, PipelineResult
from cbfmapper.preprocess.segmentation import create_tissue_masks
from cbfmapper.utils import fsl
from cbfmapper.utils.artifacts import ArtifactRegistry, create_subject_registry
from cbfmapper.utils.commands import CommandRunner
from cbfmapper.utils.workflow import close_logging, get_fsl_env, log_banner, setup_logging

logger = logging.getLogger(__name__)

WORKFLOW_NAME = 'subject_cbf'

# Registry output name <- registry source name
OUTPUT_SOURCES = {
    'out_asl_brain': 'asl_brain',
    'out_wm_mask': 'wm_mask',
    'out_gm_mask': 'gm_mask',
    'out_pdw_brain': 'pdw_brain',
    'out_m0': 'fit_m0',
    'out_cbf': 'fit_perfusion_calib',
    'out_t1': 't1w_brain_flirt',
}


def run_brain_extraction(run: SubjectRunConfig, registry: ArtifactRegistry, runner: CommandRunner) -> None:
    """Skull strip the ASL series (-F, 4D) and the PDw image."""
    bet_opts = run.bet
    runner.run('brain_extraction', fsl.bet(
        registry['asl_input'], registry['asl_brain'],
        frac=float(bet_opts.get('asl_frac', 0.5)),
        gradient=bet_opts.get('asl_gradient', 0),
        functional=True
    ))
    runner.run('brain_extraction', fsl.bet(
        registry['pdw_input'], registry['pdw_brain'],
        frac=float(bet_opts.get('pdw_frac', 0.5)),
        gradient=bet_opts.get('pdw_gradient')
    ))


def run_brain_mask(registry: ArtifactRegistry, runner: CommandRunner) -> None:
    runner.run('brain_mask', fsl.binarize(registry['pdw_calibration'], registry['pdw_mask']))


def run_perfusion_fit(run: SubjectRunConfig, registry: ArtifactRegistry, runner: CommandRunner) -> None:
    """Single oxford_asl call with the run's acquisition constants."""
    order = 'Tag then Control' if run.tag_first else 'Control then Tag'
    logger.info(f"  Calling oxford_asl: ASL sequence is {order}")
    fit = run.fit
    runner.run('perfusion_fit', fsl.oxford_asl(
        registry['asl_brain'],
        registry['pdw_calibration'],
        registry['fit_dir'],
        run.acquisition,
        label_order=run.label_order,
        ibf=fit.get('ibf', 'rpt'),
        mask=registry['pdw_mask'] if fit.get('use_mask', True) else None,
        pvcorr=bool(fit.get('pvcorr', True)),
        artoff=bool(fit.get('artoff', True))
    ))


def copy_outputs(run: SubjectRunConfig, registry: ArtifactRegistry) -> None:
    """Copy the final images into the subject output directory."""
    run.subject_dir.mkdir(parents=True, exist_ok=True)
    for out_name, path in registry.outputs().items():
        source = registry[OUTPUT_SOURCES[out_name]]
        shutil.copyfile(source, path)
        logger.info(f"  {path.name} <- {source}")
    registry.save_manifest(run.subject_dir / 'artifacts.json')


def run_summary_statistics(run: SubjectRunConfig, registry: ArtifactRegistry, runner: CommandRunner):
    record = summarize_subject(
        run.subject,
        registry['out_cbf'],
        registry['out_wm_mask'],
        registry['out_gm_mask'],
        runner=runner,
        backend=run.results.get('stats_backend', 'fslstats')
    )
    append_result(run.results_csv, record)
    return record


def build_subject_pipeline(
    run: SubjectRunConfig,
    runner: CommandRunner,
    registry: Optional[ArtifactRegistry] = None
) -> Pipeline:
    """
    Assemble the ordered stages of one subject's run.

    Parameters
    ----------
    run : SubjectRunConfig
        Validated run configuration
    runner : CommandRunner
        Executes external commands
    registry : ArtifactRegistry, optional
        Defaults to :func:`create_subject_registry` for the run

    Returns
    -------
    Pipeline
    """
    if registry is None:
        registry = create_subject_registry(
            work_dir=run.run_dir,
            subject=run.subject,
            subject_dir=run.subject_dir,
            asl=run.asl,
            pdw=run.pdw,
            t1=run.t1,
            brain_extraction=run.brain_extraction,
            fit_dir_name=run.fit.get('output_name', 'Oxasl_analysis')
        )

    pipeline = Pipeline(WORKFLOW_NAME, registry, cleanup=run.remove_temp_files)

    if run.brain_extraction:
        pipeline.add(
            'brain_extraction',
            lambda: run_brain_extraction(run, registry, runner),
            outputs=['asl_brain', 'pdw_brain'],
            description='BET: removing skull for ASL and PDw images'
        )

    pipeline.add(
        'tissue_segmentation',
        lambda: create_tissue_masks(registry, runner, run.segmentation, run.bet),
        outputs=['wm_mask', 'gm_mask'],
        description='FSL: creating GM/WM masks'
    )
    pipeline.add(
        'calibration',
        lambda: prepare_calibration(run.sequence, registry, runner),
        outputs=['pdw_calibration'],
        description='Preparing the calibration image'
    )
    pipeline.add(
        'brain_mask',
        lambda: run_brain_mask(registry, runner),
        outputs=['pdw_mask'],
        description='Creating a brain mask for the oxford_asl analysis'
    )
    pipeline.add(
        'perfusion_fit',
        lambda: run_perfusion_fit(run, registry, runner),
        outputs=['fit_m0', 'fit_perfusion_calib'],
        description='BASIL: CBF estimation with voxelwise calibration'
    )
    pipeline.add(
        'copy_outputs',
        lambda: copy_outputs(run, registry),
        outputs=list(registry.outputs()),
        description=f'Copying files to {run.subject_dir}'
    )
    pipeline.add(
        'summary_statistics',
        lambda: run_summary_statistics(run, registry, runner),
        description='Calculating GM and WM CBF'
    )
    return pipeline


def run_subject_cbf(
    run: SubjectRunConfig,
    runner: Optional[CommandRunner] = None,
    check_tools: bool = True,
    log_level: str = 'INFO'
) -> PipelineResult:
    """
    Run CBF mapping for one subject.

    Parameters
    ----------
    run : SubjectRunConfig
        Validated configuration (see ``build_subject_config``)
    runner : CommandRunner, optional
        Defaults to a runner with the run's timeout
    check_tools : bool
        Verify the external tools are on PATH before any file is written

    Returns
    -------
    PipelineResult
        Completed stages, final outputs; ``value`` is the ResultRecord

    Raises
    ------
    ConfigurationError
        If required tools are missing
    PipelineStageError
        If a stage fails (temporary files are kept)

    Examples
    --------
    >>> run = build_subject_config(load_config(), 1, 'asl.nii.gz', 'pdw.nii.gz',
    ...                            'T1.nii.gz', 1, 1, '/data/out', 'P001')
    >>> result = run_subject_cbf(run)
    >>> result.outputs['out_cbf']
    """
    if runner is None:
        runner = CommandRunner(timeout=run.timeout, env=get_fsl_env())

    if check_tools:
        missing = runner.check_tools(fsl.FSL_TOOLS)
        if missing:
            raise ConfigurationError(f"Required tools not found on PATH: {', '.join(missing)}")

    logger.info(f"Creating output directory: {run.output_dir}")
    run.output_dir.mkdir(parents=True, exist_ok=True)
    run.run_dir.mkdir(parents=True, exist_ok=True)
    handler = setup_logging(run.subject_dir, run.subject, WORKFLOW_NAME, log_level)

    try:
        log_banner(logger, "ASL CBF MAPPING")
        logger.info(f"Subject: {run.subject}")
        logger.info(f"Sequence: {int(run.sequence)} ({run.sequence.description})")
        logger.info(f"ASL: {run.asl}")
        logger.info(f"PDw: {run.pdw}")
        logger.info(f"T1w: {run.t1 if run.t1 else 'not supplied'}")
        logger.info(f"Label order: {run.label_order}")
        logger.info(f"Brain extraction: {'on' if run.brain_extraction else 'off'}")
        logger.info(f"Working directory: {run.run_dir}")
        logger.info("")

        pipeline = build_subject_pipeline(run, runner)
        result = pipeline.run()

        logger.info(f"Analysis is done for the following patient ID: {run.subject}")
        return result
    finally:
        close_logging(handler)
