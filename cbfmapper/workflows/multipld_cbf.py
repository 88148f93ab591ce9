#!/usr/bin/env python3
"""
Multi-PLD CBF mapping from a Siemens pCASL DICOM directory.

Produces model-based estimates of CBF, ATT and aCBV (cerebral blood flow,
arterial transit time, arterial cerebral blood volume) with oxford_asl.

Steps:
1. DICOM to NIfTI conversion (dcm2niix)
2. ASL series identification
3. Split of the series into volumes
4. PDw (M0) identification
5. Merge of the tag/control pairs
6. Brain extraction (optional, "anatomical preprocessing")
7. Perfusion model fit
"""

import logging
from typing import Dict, List, Optional

from cbfmapper.config import ConfigurationError, MultiPLDRunConfig
from cbfmapper.preprocess import dicom
from cbfmapper.preprocess.pipeline import Pipeline, PipelineResult
from cbfmapper.utils import fsl
from cbfmapper.utils.artifacts import ArtifactRegistry, create_multipld_registry
from cbfmapper.utils.commands import CommandRunner
from cbfmapper.utils.workflow import close_logging, get_fsl_env, log_banner, setup_logging

logger = logging.getLogger(__name__)

WORKFLOW_NAME = 'multipld_cbf'


def run_brain_extraction(run: MultiPLDRunConfig, registry: ArtifactRegistry, runner: CommandRunner) -> None:
    bet_opts = run.bet
    runner.run('brain_extraction', fsl.bet(
        registry['merged_pairs'], registry['merged_pairs_brain'],
        frac=float(bet_opts.get('asl_frac', 0.5)),
        gradient=bet_opts.get('asl_gradient', 0),
        functional=True
    ))
    runner.run('brain_extraction', fsl.bet(
        registry['pdw'], registry['pdw_brain'],
        frac=float(bet_opts.get('pdw_frac', 0.5)),
        gradient=bet_opts.get('pdw_gradient', 0)
    ))


def run_perfusion_fit(run: MultiPLDRunConfig, registry: ArtifactRegistry, runner: CommandRunner) -> None:
    fit = run.fit
    runner.run('perfusion_fit', fsl.oxford_asl(
        registry['merged_pairs_brain'],
        registry['pdw_brain'],
        registry['fit_dir'],
        run.acquisition,
        label_order=run.label_order,
        ibf=fit.get('ibf', 'tis'),
        mask=None,
        pvcorr=bool(fit.get('pvcorr', False)),
        artoff=bool(fit.get('artoff', False))
    ))


def build_multipld_pipeline(
    run: MultiPLDRunConfig,
    runner: CommandRunner,
    registry: Optional[ArtifactRegistry] = None
) -> Pipeline:
    """Assemble the ordered stages of a multi-PLD run."""
    if registry is None:
        registry = create_multipld_registry(run.preproc_dir, run.fit_dir, run.brain_extraction)

    pipeline = Pipeline(WORKFLOW_NAME, registry, cleanup=run.remove_temp_files)
    # Volume lists handed from one stage to the next
    state: Dict[str, List] = {}

    def split():
        state['volumes'] = dicom.split_series(registry, runner)

    def identify():
        state['pairs'] = dicom.identify_calibration(
            registry, state['volumes'], run.calibration_volumes, run.acquisition.n_volumes
        )

    pipeline.add(
        'collect_series',
        lambda: dicom.collect_series(run.dicom_dir, registry, runner),
        outputs=['asl_raw'],
        description='Converting DICOM images and identifying the ASL images'
    )
    pipeline.add(
        'split_series',
        split,
        description='Ordering the ASL timeseries'
    )
    pipeline.add(
        'identify_calibration',
        identify,
        outputs=['pdw'],
        description='Identifying the PDw image'
    )
    pipeline.add(
        'merge_pairs',
        lambda: dicom.merge_pairs(registry, runner, state['pairs']),
        outputs=['merged_pairs'],
        description='Merging the ASL tag-control pairs'
    )

    if run.brain_extraction:
        pipeline.add(
            'brain_extraction',
            lambda: run_brain_extraction(run, registry, runner),
            outputs=['merged_pairs_brain', 'pdw_brain'],
            description='Brain stripping using BET'
        )
    else:
        logger.info("Anatomical preprocessing has been switched off")

    pipeline.add(
        'perfusion_fit',
        lambda: run_perfusion_fit(run, registry, runner),
        outputs=['fit_perfusion_calib'],
        description='CBF estimation using BASIL'
    )
    return pipeline


def run_multipld_cbf(
    run: MultiPLDRunConfig,
    runner: Optional[CommandRunner] = None,
    check_tools: bool = True,
    log_level: str = 'INFO'
) -> PipelineResult:
    """
    Run the multi-PLD pipeline on one DICOM directory.

    Parameters
    ----------
    run : MultiPLDRunConfig
        Validated configuration (see ``build_multipld_config``)
    runner : CommandRunner, optional
        Defaults to a runner with the run's timeout
    check_tools : bool
        Verify the external tools are on PATH first

    Returns
    -------
    PipelineResult
        ``outputs['fit_dir']`` holds the oxford_asl output directory

    Raises
    ------
    ConfigurationError
        If required tools are missing
    PipelineStageError
        If a stage fails
    """
    if runner is None:
        runner = CommandRunner(timeout=run.timeout, env=get_fsl_env())

    if check_tools:
        missing = runner.check_tools(fsl.MULTIPLD_TOOLS)
        if missing:
            raise ConfigurationError(f"Required tools not found on PATH: {', '.join(missing)}")

    run.preproc_dir.mkdir(parents=True, exist_ok=True)
    handler = setup_logging(run.dicom_dir, run.dicom_dir.name, WORKFLOW_NAME, log_level)

    try:
        log_banner(logger, "MULTI-PLD ASL CBF MAPPING")
        logger.info(f"DICOM directory: {run.dicom_dir}")
        logger.info(f"Label order: {run.label_order}")
        logger.info(f"Repeats: {run.acquisition.rpts_arg}")
        logger.info(f"TIs: {run.acquisition.tis_arg}")
        logger.info("")

        result = build_multipld_pipeline(run, runner).run()
        logger.info(f"Outputs written to {run.fit_dir}")
        return result
    finally:
        close_logging(handler)
