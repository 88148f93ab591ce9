#!/usr/bin/env python3
"""
Cohort processing for the per-subject CBF workflow.

Runs every subject listed in a manifest table one after another, sharing a
results table that is created fresh for the batch. A failed subject is
recorded and the batch moves on to the next one.

Manifest columns (CSV or TSV, header required):

    subject, sequence, asl, pdw, t1, tag_first, bet

``t1`` may be blank or ``1`` when no T1w image exists.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from cbfmapper.analysis.tissue_stats import load_results, reset_results
from cbfmapper.config import ConfigurationError, build_subject_config
from cbfmapper.utils.commands import CommandRunner, PipelineStageError
from cbfmapper.utils.workflow import log_banner
from cbfmapper.workflows.subject_cbf import run_subject_cbf

logger = logging.getLogger(__name__)

MANIFEST_COLUMNS = ['subject', 'sequence', 'asl', 'pdw', 't1', 'tag_first', 'bet']


@dataclass
class CohortSummary:
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    results_csv: Optional[Path] = None
    results: Optional[pd.DataFrame] = None

    @property
    def ok(self) -> bool:
        return not self.failed


def load_manifest(manifest_file: Path) -> pd.DataFrame:
    """
    Read the subject manifest.

    Raises
    ------
    ConfigurationError
        If the file is missing or lacks required columns
    """
    manifest_file = Path(manifest_file)
    if not manifest_file.exists():
        raise ConfigurationError(f"Manifest not found: {manifest_file}")

    sep = '\t' if manifest_file.suffix.lower() in ('.tsv', '.txt') else ','
    df = pd.read_csv(manifest_file, sep=sep, dtype=str, keep_default_na=False)
    df.columns = [c.strip().lower() for c in df.columns]

    if 't1' not in df.columns:
        df['t1'] = ''

    missing = [c for c in MANIFEST_COLUMNS if c not in df.columns]
    if missing:
        raise ConfigurationError(f"Manifest {manifest_file} lacks columns: {', '.join(missing)}")

    if df['subject'].duplicated().any():
        duplicates = sorted(set(df.loc[df['subject'].duplicated(), 'subject']))
        raise ConfigurationError(f"Duplicate subjects in manifest: {', '.join(duplicates)}")

    return df[MANIFEST_COLUMNS]


def run_cohort(
    config: Dict[str, Any],
    manifest_file: Path,
    output_dir: Path,
    runner: Optional[CommandRunner] = None,
    remove_temp_files: Optional[bool] = None,
    timeout: Optional[float] = None,
    check_tools: bool = True
) -> CohortSummary:
    """
    Process every subject of a manifest sequentially.

    Parameters
    ----------
    config : dict
        Configuration from ``load_config``
    manifest_file : Path
        Subject manifest (see module docstring)
    output_dir : Path
        Shared output directory; holds the results table and one folder per subject

    Returns
    -------
    CohortSummary
        Subjects that succeeded and failed (with the reason)
    """
    output_dir = Path(output_dir)
    manifest = load_manifest(manifest_file)
    summary = CohortSummary()

    log_banner(logger, f"COHORT CBF MAPPING: {len(manifest)} subjects")

    csv_name = config.get('subject', {}).get('results', {}).get('csv_name', 'CBF_Analysis_GM_WM.csv')
    output_dir.mkdir(parents=True, exist_ok=True)
    summary.results_csv = reset_results(output_dir / csv_name)

    for index, row in enumerate(manifest.itertuples(index=False), start=1):
        subject = row.subject
        logger.info(f"Subject {index}/{len(manifest)}: {subject}")

        try:
            run = build_subject_config(
                config,
                sequence=row.sequence,
                asl=row.asl,
                pdw=row.pdw,
                t1=row.t1,
                tag_or_control=row.tag_first,
                need_bet=row.bet,
                output_dir=output_dir,
                subject=subject,
                remove_temp_files=remove_temp_files,
                timeout=timeout
            )
            run_subject_cbf(run, runner=runner, check_tools=check_tools)
        except (ConfigurationError, PipelineStageError) as e:
            logger.error(f"FAILED: {subject}: {e}")
            summary.failed[subject] = str(e)
            continue

        summary.succeeded.append(subject)
        logger.info(f"SUCCESS: {subject}")

    summary.results = load_results(summary.results_csv)
    logger.info("")
    logger.info(f"Results table {summary.results_csv}: {len(summary.results)} rows")
    for row in summary.results.itertuples(index=False):
        logger.info(f"  {row.subject}: GM {row.gm_mean:.2f}, WM {row.wm_mean:.2f}")
    logger.info(f"Completed: {len(summary.succeeded)} succeeded, {len(summary.failed)} failed")
    for subject, reason in summary.failed.items():
        logger.info(f"  {subject}: {reason}")
    return summary
