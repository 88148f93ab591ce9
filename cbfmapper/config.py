#!/usr/bin/env python3
"""
Configuration loader and run parameters for the CBF mapping pipelines.

Handles:
- Loading YAML configuration files
- Merging user configs with the packaged defaults
- Environment variable substitution
- Typed, validated run configuration (acquisition constants, switches)
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import yaml

from cbfmapper.analysis.tissue_stats import STATS_BACKENDS
from cbfmapper.preprocess.calibration import SequenceID


DEFAULT_CONFIG = Path(__file__).parent / 'configs' / 'default.yaml'

# Values accepted on the command line to mean "no T1w image supplied"
NO_T1_SENTINELS = ('', '1', 'none', 'None', 'NONE')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required parameters."""
    pass


def load_yaml(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML configuration file.

    Parameters
    ----------
    file_path : Path
        Path to YAML file

    Returns
    -------
    dict
        Loaded configuration

    Raises
    ------
    ConfigurationError
        If file doesn't exist or YAML is invalid
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise ConfigurationError(f"Configuration file not found: {file_path}")

    try:
        with open(file_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {file_path}: {e}")

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"Top level of {file_path} must be a mapping")
    return config


def merge_configs(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Recursively merge two configuration dictionaries.

    Parameters
    ----------
    base : dict
        Base configuration (defaults)
    override : dict
        Override configuration (study-specific)

    Returns
    -------
    dict
        Merged configuration (override takes precedence)
    """
    merged = base.copy()

    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = value

    return merged


def substitute_variables(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Substitute ${ENV_VAR} references in string values.

    Unknown variables are left untouched.
    """
    pattern = re.compile(r'\$\{([^}]+)\}')

    def replacer(match):
        return os.environ.get(match.group(1), match.group(0))

    def process_value(value: Any) -> Any:
        if isinstance(value, str):
            return pattern.sub(replacer, value)
        elif isinstance(value, dict):
            return {k: process_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [process_value(item) for item in value]
        return value

    return process_value(config)


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load the packaged defaults, merged with an optional user configuration.

    Parameters
    ----------
    config_path : Path, optional
        User YAML file. Its values override the defaults key by key.

    Returns
    -------
    dict
        Processed configuration

    Raises
    ------
    ConfigurationError
        If a configuration file is missing or invalid
    """
    config = load_yaml(DEFAULT_CONFIG)

    if config_path is not None:
        config = merge_configs(config, load_yaml(Path(config_path)))

    return substitute_variables(config)


def get_config_value(config: Dict[str, Any], key_path: str, default: Any = None) -> Any:
    """
    Get a value from config using dot notation.

    Examples
    --------
    >>> get_config_value(config, 'subject.bet.pdw_frac')
    0.5
    >>> get_config_value(config, 'missing.key', default=0.3)
    0.3
    """
    try:
        value = config
        for part in key_path.split('.'):
            value = value[part]
        return value
    except (KeyError, TypeError):
        return default


# ---------------------------------------------------------------------------
# Command line values
# ---------------------------------------------------------------------------

def parse_sequence_id(value: Any) -> SequenceID:
    """
    Parse the sequence selector given on the command line.

    Raises
    ------
    ConfigurationError
        If the value is not an integer or names an unsupported sequence
    """
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ConfigurationError("Please enter a number for sequence selection")

    try:
        return SequenceID(number)
    except ValueError:
        supported = ', '.join(str(int(s)) for s in SequenceID)
        raise ConfigurationError(
            f"You entered an invalid sequence: {number} (supported: {supported})"
        )


def parse_switch(value: Any, name: str) -> bool:
    """Parse a 0/1 switch. Anything else is a configuration error."""
    text = str(value).strip()
    if text == '1':
        return True
    if text == '0':
        return False
    raise ConfigurationError(f"{name} must be 0 or 1, got '{value}'")


def parse_t1(value: Optional[Any]) -> Optional[Path]:
    """Return the T1w path, or None when the 'no T1' sentinel was given."""
    if value is None or str(value).strip() in NO_T1_SENTINELS:
        return None
    return Path(str(value).strip())


def _as_sequence(value: Any, name: str) -> Sequence:
    # "1,1,1" strings are accepted as well as YAML lists
    if isinstance(value, str):
        return [item.strip() for item in value.split(',') if item.strip()]
    if isinstance(value, (list, tuple)):
        return list(value)
    raise ConfigurationError(f"{name} must be a list or comma-separated string")


# ---------------------------------------------------------------------------
# Run configuration objects
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AcquisitionParams:
    """
    ASL acquisition and model constants passed to the perfusion fitter.

    Attributes
    ----------
    bolus : float
        Label duration (s)
    tr_pdw : float
        Repetition time of the PDw calibration scan (s)
    att : float
        Arterial transit time prior (s)
    t1_tissue : float
        Tissue T1 (s)
    t1_blood : float
        Arterial blood T1 (s)
    inversion_efficiency : float
        Labeling efficiency (alpha)
    repeats : tuple of int
        Repeats per labeling-delay condition
    tis : tuple of float
        Inversion time (PLD + bolus) per condition, index-aligned with repeats
    """

    bolus: float
    tr_pdw: float
    att: float
    t1_tissue: float
    t1_blood: float
    inversion_efficiency: float
    repeats: Tuple[int, ...]
    tis: Tuple[float, ...]

    @classmethod
    def from_dict(cls, params: Dict[str, Any]) -> 'AcquisitionParams':
        """Build and validate from a config section."""
        required = ['bolus', 'tr_pdw', 'att', 't1_tissue', 't1_blood',
                    'inversion_efficiency', 'repeats', 'tis']
        missing = [key for key in required if key not in params]
        if missing:
            raise ConfigurationError(f"Missing acquisition parameters: {', '.join(missing)}")

        try:
            repeats = tuple(int(r) for r in _as_sequence(params['repeats'], 'repeats'))
            tis = tuple(float(t) for t in _as_sequence(params['tis'], 'tis'))
            acquisition = cls(
                bolus=float(params['bolus']),
                tr_pdw=float(params['tr_pdw']),
                att=float(params['att']),
                t1_tissue=float(params['t1_tissue']),
                t1_blood=float(params['t1_blood']),
                inversion_efficiency=float(params['inversion_efficiency']),
                repeats=repeats,
                tis=tis,
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid acquisition parameter: {e}")

        acquisition.validate()
        return acquisition

    def validate(self) -> None:
        """
        Check the constants are physically meaningful.

        Raises
        ------
        ConfigurationError
            On empty or mismatched repeat/TIS lists, or out-of-range values
        """
        if not self.repeats or not self.tis:
            raise ConfigurationError("repeats and tis must each list at least one condition")

        if len(self.repeats) != len(self.tis):
            raise ConfigurationError(
                f"repeats ({len(self.repeats)} entries) and tis ({len(self.tis)} entries) "
                "must have the same length: one entry per labeling-delay condition"
            )

        if any(r < 1 for r in self.repeats):
            raise ConfigurationError(f"repeats must be positive integers: {list(self.repeats)}")

        if any(t <= 0 for t in self.tis):
            raise ConfigurationError(f"tis must be positive: {list(self.tis)}")

        for name in ('bolus', 'tr_pdw', 'att', 't1_tissue', 't1_blood'):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")

        if not 0 < self.inversion_efficiency <= 1:
            raise ConfigurationError(
                f"inversion_efficiency must be in (0, 1], got {self.inversion_efficiency}"
            )

    @property
    def rpts_arg(self) -> str:
        return ','.join(str(r) for r in self.repeats)

    @property
    def tis_arg(self) -> str:
        return ','.join(f'{t:g}' for t in self.tis)

    @property
    def n_volumes(self) -> int:
        """Expected number of tag + control volumes."""
        return 2 * sum(self.repeats)


@dataclass(frozen=True)
class SubjectRunConfig:
    """Everything one per-subject CBF run needs, validated up front."""

    sequence: SequenceID
    asl: Path
    pdw: Path
    t1: Optional[Path]
    tag_first: bool
    brain_extraction: bool
    output_dir: Path
    subject: str
    acquisition: AcquisitionParams
    remove_temp_files: bool = True
    timeout: Optional[float] = None
    work_dir: Optional[Path] = None
    bet: Dict[str, Any] = field(default_factory=dict)
    segmentation: Dict[str, Any] = field(default_factory=dict)
    fit: Dict[str, Any] = field(default_factory=dict)
    results: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject_dir(self) -> Path:
        return self.output_dir / self.subject

    @property
    def run_dir(self) -> Path:
        """Run-scoped working directory for intermediate artifacts."""
        if self.work_dir is not None:
            return self.work_dir
        return self.output_dir / f'{self.subject}_work'

    @property
    def results_csv(self) -> Path:
        return self.output_dir / self.results.get('csv_name', 'CBF_Analysis_GM_WM.csv')

    @property
    def label_order(self) -> str:
        """oxford_asl --iaf value."""
        return 'tc' if self.tag_first else 'ct'


@dataclass(frozen=True)
class MultiPLDRunConfig:
    """Parameters for the DICOM-to-CBF multi-PLD batch run."""

    dicom_dir: Path
    acquisition: AcquisitionParams
    tag_first: bool = True
    brain_extraction: bool = True
    remove_temp_files: bool = False
    timeout: Optional[float] = None
    calibration_volumes: int = 2
    bet: Dict[str, Any] = field(default_factory=dict)
    fit: Dict[str, Any] = field(default_factory=dict)

    @property
    def preproc_dir(self) -> Path:
        return self.dicom_dir / 'asl_preprocessing'

    @property
    def fit_dir(self) -> Path:
        return self.dicom_dir / self.fit.get('output_name', 'MultiPLD_CBF_Analysis_Output')

    @property
    def label_order(self) -> str:
        return 'tc' if self.tag_first else 'ct'


def _validate_segmentation(settings: Dict[str, Any]) -> None:
    """Reject mask thresholds and FAST class indices the segmentation stage cannot use."""
    try:
        threshold = float(settings.get('threshold', 0.9))
        n_classes = int(settings.get('fast', {}).get('n_classes', 3))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid segmentation setting: {e}")

    if not 0 < threshold <= 1:
        raise ConfigurationError(f"segmentation.threshold must be in (0, 1], got {threshold}")
    # Partial-volume maps exist for pve_0 .. pve_2 only
    if n_classes not in (2, 3):
        raise ConfigurationError(f"segmentation.fast.n_classes must be 2 or 3, got {n_classes}")

    for route in ('t1_classes', 'pdw_classes'):
        classes = settings.get(route, {})
        for tissue in ('wm', 'gm'):
            if tissue not in classes:
                raise ConfigurationError(f"segmentation.{route} lacks a '{tissue}' class index")
            try:
                index = int(classes[tissue])
            except (TypeError, ValueError):
                raise ConfigurationError(
                    f"segmentation.{route}.{tissue} must be an integer, got '{classes[tissue]}'"
                )
            if index not in range(n_classes):
                raise ConfigurationError(
                    f"segmentation.{route}.{tissue} must be in 0..{n_classes - 1}, got {index}"
                )


def _validate_fit(fit: Dict[str, Any], section: str, default_ibf: str) -> None:
    ibf = fit.get('ibf', default_ibf)
    if ibf not in ('rpt', 'tis'):
        raise ConfigurationError(f"{section}.fit.ibf must be 'rpt' or 'tis', got '{ibf}'")


def _validate_results(results: Dict[str, Any]) -> None:
    backend = results.get('stats_backend', 'fslstats')
    if backend not in STATS_BACKENDS:
        raise ConfigurationError(
            f"results.stats_backend must be one of {', '.join(STATS_BACKENDS)}, got '{backend}'"
        )


def _check_input(path: Path, description: str) -> Path:
    if not path.exists():
        raise ConfigurationError(f"{description} not found: {path}")
    return path


def build_subject_config(
    config: Dict[str, Any],
    sequence: Any,
    asl: Any,
    pdw: Any,
    t1: Any,
    tag_or_control: Any,
    need_bet: Any,
    output_dir: Any,
    subject: str,
    remove_temp_files: Optional[bool] = None,
    timeout: Optional[float] = None,
    work_dir: Optional[Any] = None,
) -> SubjectRunConfig:
    """
    Validate command line values against the loaded configuration.

    Performs no filesystem writes; every check that can fail runs here.

    Parameters
    ----------
    config : dict
        Configuration from :func:`load_config`
    sequence : str or int
        Sequence selector (0 or 1)
    asl, pdw : path-like
        ASL tag/control series and PDw calibration image
    t1 : path-like or str
        T1w image, or "1" when none is available
    tag_or_control : str or int
        1 if the first volume is tag, 0 if it is control
    need_bet : str or int
        1 to skull-strip ASL and PDw images
    output_dir : path-like
        Output directory (created later, idempotently)
    subject : str
        Subject ID used for the output subdirectory and CSV row

    Returns
    -------
    SubjectRunConfig

    Raises
    ------
    ConfigurationError
        On any invalid value or missing input
    """
    sequence_id = parse_sequence_id(sequence)
    tag_first = parse_switch(tag_or_control, 'tag_or_control')
    brain_extraction = parse_switch(need_bet, 'need_bet')

    subject = str(subject).strip()
    if not subject:
        raise ConfigurationError("Subject ID must not be empty")

    section = config.get('subject', {})
    acquisition = AcquisitionParams.from_dict(section.get('acquisition', {}))
    _validate_segmentation(section.get('segmentation', {}))
    _validate_fit(section.get('fit', {}), 'subject', 'rpt')
    _validate_results(section.get('results', {}))

    t1_path = parse_t1(t1)
    if t1_path is not None:
        _check_input(t1_path, 'T1w image')

    if remove_temp_files is None:
        remove_temp_files = bool(get_config_value(config, 'execution.remove_temp_files', True))
    if timeout is None:
        timeout = get_config_value(config, 'execution.timeout')

    return SubjectRunConfig(
        sequence=sequence_id,
        asl=_check_input(Path(asl), 'ASL image'),
        pdw=_check_input(Path(pdw), 'PDw image'),
        t1=t1_path,
        tag_first=tag_first,
        brain_extraction=brain_extraction,
        output_dir=Path(output_dir),
        subject=subject,
        acquisition=acquisition,
        remove_temp_files=remove_temp_files,
        timeout=float(timeout) if timeout is not None else None,
        work_dir=Path(work_dir) if work_dir is not None else None,
        bet=section.get('bet', {}),
        segmentation=section.get('segmentation', {}),
        fit=section.get('fit', {}),
        results=section.get('results', {}),
    )


def build_multipld_config(
    config: Dict[str, Any],
    dicom_dir: Any,
    brain_extraction: Optional[bool] = None,
    remove_temp_files: Optional[bool] = None,
    timeout: Optional[float] = None,
) -> MultiPLDRunConfig:
    """Validate the multi-PLD batch parameters. No filesystem writes."""
    dicom_dir = Path(dicom_dir)
    if not dicom_dir.is_dir():
        raise ConfigurationError(f"DICOM directory not found: {dicom_dir}")

    section = config.get('multipld', {})
    acquisition = AcquisitionParams.from_dict(section.get('acquisition', {}))

    label_order = str(section.get('label_order', 'tc')).lower()
    if label_order not in ('tc', 'ct'):
        raise ConfigurationError(f"label_order must be 'tc' or 'ct', got '{label_order}'")

    _validate_fit(section.get('fit', {}), 'multipld', 'tis')

    calibration_volumes = int(section.get('calibration_volumes', 2))
    if calibration_volumes < 1:
        raise ConfigurationError("calibration_volumes must be at least 1")

    if brain_extraction is None:
        brain_extraction = bool(section.get('need_anat', True))
    if remove_temp_files is None:
        remove_temp_files = bool(section.get('remove_temp_files', False))
    if timeout is None:
        timeout = get_config_value(config, 'execution.timeout')

    return MultiPLDRunConfig(
        dicom_dir=dicom_dir,
        acquisition=acquisition,
        tag_first=label_order == 'tc',
        brain_extraction=brain_extraction,
        remove_temp_files=remove_temp_files,
        timeout=float(timeout) if timeout is not None else None,
        calibration_volumes=calibration_volumes,
        bet=section.get('bet', {}),
        fit=section.get('fit', {}),
    )
