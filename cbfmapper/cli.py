#!/usr/bin/env python3
"""
Command-line interface for CBF mapping.

Usage:
    cbfmapper subject SEQUENCE ASL PDW T1 TAG_OR_CONTROL NEED_BET OUTPUT_DIR SUBJECT
    cbfmapper multipld DICOM_DIR
    cbfmapper cohort MANIFEST OUTPUT_DIR

Sequence IDs:
    0  Siemens Prisma 3T direct compute (voxelwise calibration)
    1  Siemens Prisma 3T Danny Wang sequence, RCAF study
       (voxelwise calibration, WM intensity correction for overexposed voxels)

Exit status: 0 on success, 1 on invalid input, 2 when a pipeline stage fails.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from cbfmapper import __version__
from cbfmapper.config import (
    ConfigurationError,
    build_multipld_config,
    build_subject_config,
    get_config_value,
    load_config,
)
from cbfmapper.utils.commands import CommandRunner, PipelineStageError
from cbfmapper.utils.workflow import get_fsl_env, setup_console_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_PIPELINE_ERROR = 2


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--config', type=Path, help='YAML file overriding the default settings')
    parser.add_argument('--timeout', type=float,
                        help='Seconds allowed per external command (default: no limit)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Log every command')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='cbfmapper',
        description='Cerebral blood flow maps from ASL MRI with FSL and BASIL',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', required=True)

    subject = subparsers.add_parser('subject', help='CBF mapping for one subject')
    subject.add_argument('sequence', help='Sequence ID (0 or 1)')
    subject.add_argument('asl', help='ASL control/tag pairs')
    subject.add_argument('pdw', help='ASL proton-density image')
    subject.add_argument('t1', help='T1w image for segmentation, or 1 if unavailable '
                                    '(masks are then estimated from PDw: always QC them)')
    subject.add_argument('tag_or_control', help='First image: control-then-tag = 0, tag-then-control = 1')
    subject.add_argument('need_bet', help='Brain extraction: no = 0, yes = 1')
    subject.add_argument('output_dir', help='Output directory')
    subject.add_argument('subject', help='ID/initials of the subject')
    subject.add_argument('--keep-temp', action='store_true', help='Keep intermediate files')
    subject.add_argument('--work-dir', type=Path,
                         help='Working directory for intermediates (default: OUTPUT_DIR/SUBJECT_work)')
    _add_common_options(subject)

    multipld = subparsers.add_parser('multipld', help='Multi-PLD CBF/ATT/aCBV from a DICOM directory')
    multipld.add_argument('dicom_dir', type=Path, help='Analysis directory with the raw pCASL DICOMs')
    multipld.add_argument('--no-anat', action='store_true', help='Switch off brain extraction')
    multipld.add_argument('--cleanup', action='store_true', help='Remove asl_preprocessing after success')
    _add_common_options(multipld)

    cohort = subparsers.add_parser('cohort', help='Per-subject CBF mapping for every row of a manifest')
    cohort.add_argument('manifest', type=Path,
                        help='CSV/TSV with columns subject, sequence, asl, pdw, t1, tag_first, bet')
    cohort.add_argument('output_dir', type=Path, help='Shared output directory')
    cohort.add_argument('--keep-temp', action='store_true', help='Keep intermediate files')
    _add_common_options(cohort)

    return parser


def _resolve_timeout(config, timeout: Optional[float]) -> Optional[float]:
    """--timeout wins over execution.timeout from the config."""
    if timeout is None:
        timeout = get_config_value(config, 'execution.timeout')
    return float(timeout) if timeout is not None else None


def _runner(config, timeout) -> CommandRunner:
    return CommandRunner(timeout=timeout, env=get_fsl_env(config))


def run_subject_command(args: argparse.Namespace, config) -> int:
    from cbfmapper.workflows.subject_cbf import run_subject_cbf

    run = build_subject_config(
        config,
        sequence=args.sequence,
        asl=args.asl,
        pdw=args.pdw,
        t1=args.t1,
        tag_or_control=args.tag_or_control,
        need_bet=args.need_bet,
        output_dir=args.output_dir,
        subject=args.subject,
        remove_temp_files=False if args.keep_temp else None,
        timeout=args.timeout,
        work_dir=args.work_dir
    )
    print(f"Analysing CBF for the following patient ID: {run.subject}")
    run_subject_cbf(run, runner=_runner(config, run.timeout),
                    log_level='DEBUG' if args.verbose else 'INFO')
    return EXIT_OK


def run_multipld_command(args: argparse.Namespace, config) -> int:
    from cbfmapper.workflows.multipld_cbf import run_multipld_cbf

    run = build_multipld_config(
        config,
        dicom_dir=args.dicom_dir,
        brain_extraction=False if args.no_anat else None,
        remove_temp_files=True if args.cleanup else None,
        timeout=args.timeout
    )
    run_multipld_cbf(run, runner=_runner(config, run.timeout),
                     log_level='DEBUG' if args.verbose else 'INFO')
    return EXIT_OK


def run_cohort_command(args: argparse.Namespace, config) -> int:
    from cbfmapper.workflows.cohort import run_cohort

    timeout = _resolve_timeout(config, args.timeout)
    summary = run_cohort(
        config,
        args.manifest,
        args.output_dir,
        runner=_runner(config, timeout),
        remove_temp_files=False if args.keep_temp else None,
        timeout=timeout
    )
    return EXIT_OK if summary.ok else EXIT_PIPELINE_ERROR


COMMANDS = {
    'subject': run_subject_command,
    'multipld': run_multipld_command,
    'cohort': run_cohort_command,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_console_logging('DEBUG' if args.verbose else 'INFO')

    try:
        config = load_config(args.config)
        return COMMANDS[args.command](args, config)
    except ConfigurationError as e:
        print(f"Error: {e}")
        return EXIT_CONFIG_ERROR
    except PipelineStageError as e:
        print(f"Error: pipeline failed at stage '{e.stage}': {e}")
        if e.command:
            print(f"  Command: {e.command_line}")
        return EXIT_PIPELINE_ERROR


if __name__ == '__main__':
    sys.exit(main())
