"""
Shared helpers for the ACT connectome workflow.

Provides utilities for:
- Pipeline configuration (defaults and JSON overrides)
- The exception hierarchy used across stages
- Logging setup for the command-line entry points
- JSON metadata and checksum helpers
"""

import hashlib
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# ---------------------------------------------------------------------------
# Default pipeline parameters
# ---------------------------------------------------------------------------

DEFAULT_CONFIG = {
    "BET_FRACTIONAL_INTENSITY": 0.2,
    "T1_TO_DWI_DOF": 6,
    "MASK_DILATE_NPASS": 2,
    "RESPONSE_ALGORITHM": "tournier",
    "CSD_ALGORITHM": "csd",
    "BIAS_CORRECTION": "ants",
    "DWIPREPROC_COMMAND": "dwipreproc",
    "DEGIBBS": False,
    "RPE_MODE": "header",
    "TCKGEN_SELECT": "20M",
    "TCKSIFT_TERM_NUMBER": "5M",
    "ATLAS_PATTERN": "Schaefer*.nii.gz",
    "MNI_TEMPLATE": "MNI152_T1_1mm_brain.nii.gz",
    "PARCELLATION_NAME": "Yeo400",
    "RFE_FOLDER": "RFE_FOLDER",
}

RPE_MODES = ("header", "se_epi")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PipelineError(Exception):
    """Base class for every failure that aborts a session or the run."""


class ConfigError(PipelineError):
    """Invalid configuration override."""


class SubjectListError(PipelineError):
    """The subject list is missing or malformed."""


class LayoutError(PipelineError):
    """Input folders do not follow the expected BIDS layout."""


class MissingInputError(PipelineError):
    """A required raw input file is absent, duplicated or inconsistent."""


class MissingExecutableError(PipelineError):
    """An external binary is not available on PATH."""


class CommandError(PipelineError):
    """An external command exited with a non-zero status."""

    def __init__(self, cmd, returncode, stderr=""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command failed (exit={returncode}): {' '.join(self.cmd)}"
        )


class StageOutputError(PipelineError):
    """A command succeeded but did not write its expected outputs."""


class AtlasError(PipelineError):
    """The parcellation atlas or MNI template cannot be found or fetched."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def get_config(overrides: dict | None = None) -> dict:
    """Return pipeline configuration, optionally overriding defaults."""
    config = DEFAULT_CONFIG.copy()
    if overrides:
        unknown = sorted(set(overrides) - set(DEFAULT_CONFIG))
        if unknown:
            raise ConfigError(
                f"Unknown configuration key(s): {', '.join(unknown)}"
            )
        config.update(overrides)
    if config["RPE_MODE"] not in RPE_MODES:
        raise ConfigError(
            f"RPE_MODE must be one of {RPE_MODES}, got {config['RPE_MODE']!r}"
        )
    return config


def load_config(path: str | Path | None) -> dict:
    """Load a JSON file of overrides and merge it with the defaults."""
    if path is None:
        return get_config()
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: {path}")
    try:
        overrides = load_metadata(path)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Configuration file is not valid JSON: {path}") from exc
    if not isinstance(overrides, dict):
        raise ConfigError(f"Configuration file must hold a JSON object: {path}")
    return get_config(overrides)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def setup_logging(verbose: bool = False) -> None:
    """Configure root logging for a command-line entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )


def log_banner(title: str) -> None:
    logger.info("=" * 60)
    logger.info(title)
    logger.info("=" * 60)


# ---------------------------------------------------------------------------
# Metadata utilities
# ---------------------------------------------------------------------------

def load_metadata(path: str | Path) -> dict:
    """Load JSON metadata sidecar."""
    with open(path) as f:
        return json.load(f)


def save_metadata(data: dict, path: str | Path) -> None:
    """Save JSON metadata sidecar."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2, sort_keys=True, default=str)
    logger.info("Saved metadata: %s", path)


def sha256_file(path: Path) -> str:
    """Return the hex SHA-256 digest of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def strip_prefix(label: str, prefix: str) -> str:
    """Drop a BIDS entity prefix such as ``sub-`` if present."""
    return label[len(prefix):] if label.startswith(prefix) else label
