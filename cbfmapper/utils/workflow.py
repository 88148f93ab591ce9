#!/usr/bin/env python3
"""
Workflow helper utilities.

Logging setup and FSL environment handling shared by the CBF workflows.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def setup_console_logging(level: str = 'INFO') -> None:
    """
    Configure root logging to the console.

    File logging is attached later, once a run has passed validation and
    its output directory exists.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    logging.getLogger().setLevel(numeric_level)


def setup_logging(
    log_dir: Path,
    subject: str,
    workflow_name: str,
    level: str = 'INFO'
) -> logging.FileHandler:
    """
    Send pipeline log records to a per-run log file.

    Parameters
    ----------
    log_dir : Path
        Directory for the log file (created if needed)
    subject : str
        Subject ID
    workflow_name : str
        Name of workflow
    level : str
        Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns
    -------
    logging.FileHandler
        The attached handler; pass it to :func:`close_logging` when done

    Examples
    --------
    >>> handler = setup_logging(Path("/data/out/P001"), "P001", "subject-cbf")
    >>> logging.getLogger("cbfmapper").info("Starting CBF mapping")
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    log_file = log_dir / f"{subject}_{workflow_name}.log"
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))

    package_logger = logging.getLogger('cbfmapper')
    package_logger.addHandler(file_handler)
    if package_logger.level == logging.NOTSET or package_logger.level > numeric_level:
        package_logger.setLevel(numeric_level)

    return file_handler


def close_logging(handler: Optional[logging.Handler]) -> None:
    """Detach and close a handler returned by :func:`setup_logging`."""
    if handler is None:
        return
    logging.getLogger('cbfmapper').removeHandler(handler)
    handler.close()


def get_fsl_env(config: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
    """
    Environment for FSL subprocesses.

    FSLOUTPUTTYPE is forced so that every tool writes ``.nii.gz`` files,
    which is what the artifact names assume.

    Examples
    --------
    >>> env = get_fsl_env(config)
    >>> env['FSLOUTPUTTYPE']
    'NIFTI_GZ'
    """
    output_type = 'NIFTI_GZ'
    if config and 'fsl' in config:
        output_type = config['fsl'].get('output_type', output_type)

    env = os.environ.copy()
    env['FSLOUTPUTTYPE'] = output_type
    return env


def log_banner(logger: logging.Logger, title: str) -> None:
    logger.info("=" * 70)
    logger.info(title)
    logger.info("=" * 70)
