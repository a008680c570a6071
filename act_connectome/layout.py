"""
BIDS path resolution for one session.

Input data is read from ``<input>/sub-<S>/ses-<T>/{dwi,anat,fmap}`` and every
derived file is written to the mirrored ``<output>/sub-<S>/ses-<T>/`` tree.
Stage outputs are named ``sub-<S>_ses-<T>_<suffix>``.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from act_connectome.subjects import SessionEntry
from act_connectome.utils import LayoutError, MissingInputError

logger = logging.getLogger(__name__)

REGISTRATION_FOLDER = "registration_files"

# kind -> (folder, glob)
DWI_INPUT_PATTERNS = {
    "dwi": ("dwi", "*.nii.gz"),
    "bvec": ("dwi", "*.bvec"),
    "bval": ("dwi", "*.bval"),
    "json": ("dwi", "*.json"),
    "t1": ("anat", "*T1w*.nii.gz"),
}
REVERSE_PE_PATTERN = ("fmap", "*epi.nii.gz")


@dataclass(frozen=True)
class DwiInputs:
    """Raw files for one session."""

    dwi: Path
    bvec: Path
    bval: Path
    json: Path
    t1: Path
    reverse_b0: Path | None = None


@dataclass(frozen=True)
class SessionLayout:
    """Input and output folders of one session."""

    entry: SessionEntry
    input_dir: Path
    output_dir: Path

    @property
    def subject_dir(self) -> Path:
        return self.input_dir / f"sub-{self.entry.subject}"

    @property
    def session_dir(self) -> Path:
        return self.subject_dir / f"ses-{self.entry.session}"

    @property
    def dwi_dir(self) -> Path:
        return self.session_dir / "dwi"

    @property
    def anat_dir(self) -> Path:
        return self.session_dir / "anat"

    @property
    def fmap_dir(self) -> Path:
        return self.session_dir / "fmap"

    @property
    def out_session_dir(self) -> Path:
        return (
            self.output_dir
            / f"sub-{self.entry.subject}"
            / f"ses-{self.entry.session}"
        )

    @property
    def out_dwi_dir(self) -> Path:
        return self.out_session_dir / "dwi"

    @property
    def out_anat_dir(self) -> Path:
        return self.out_session_dir / "anat"

    @property
    def registration_dir(self) -> Path:
        return self.out_anat_dir / REGISTRATION_FOLDER

    def dwi_output(self, suffix: str) -> Path:
        """Derived diffusion file, e.g. ``dwi_output("dwi_dn.mif")``."""
        return self.out_dwi_dir / f"{self.entry.prefix}_{suffix}"

    def anat_output(self, suffix: str) -> Path:
        """Derived anatomical file, e.g. ``anat_output("T1w_bet.nii.gz")``."""
        return self.out_anat_dir / f"{self.entry.prefix}_{suffix}"

    def registration_output(self, name: str) -> Path:
        return self.registration_dir / name

    def make_output_dirs(self) -> None:
        for d in (self.out_dwi_dir, self.out_anat_dir, self.registration_dir):
            if not d.is_dir():
                logger.info("Creating output folder: %s", d)
                d.mkdir(parents=True, exist_ok=True)


def session_layout(
    input_dir: str | Path,
    output_dir: str | Path,
    entry: SessionEntry,
) -> SessionLayout:
    return SessionLayout(entry, Path(input_dir), Path(output_dir))


def check_bids_folders(layout: SessionLayout) -> None:
    """
    Verify the subject, session, dwi and anat input folders exist.

    Raises
    ------
    LayoutError
        Naming every missing folder.
    """
    required = [
        layout.subject_dir,
        layout.session_dir,
        layout.dwi_dir,
        layout.anat_dir,
    ]
    missing = [str(d) for d in required if not d.is_dir()]
    if missing:
        raise LayoutError(
            f"{layout.entry}: BIDS compatible folder structure not found. "
            f"Please check layout; missing: {', '.join(missing)}"
        )


def _find_one(folder: Path, pattern: str) -> list[Path]:
    if not folder.is_dir():
        return []
    return sorted(p for p in folder.glob(pattern) if p.is_file())


def find_dwi_inputs(layout: SessionLayout, reverse_pe: bool = False) -> DwiInputs:
    """
    Locate the raw DWI, gradient, sidecar and T1 files of a session.

    Exactly one file of each kind is expected. With ``reverse_pe`` a single
    reverse phase-encoded b=0 series (``fmap/*epi.nii.gz``) is required too.

    Raises
    ------
    MissingInputError
        Listing every kind that is missing or ambiguous.
    """
    found = {}
    missing = []
    ambiguous = []

    patterns = dict(DWI_INPUT_PATTERNS)
    if reverse_pe:
        patterns["reverse_b0"] = REVERSE_PE_PATTERN

    for kind, (folder_name, pattern) in patterns.items():
        folder = getattr(layout, f"{folder_name}_dir")
        matches = _find_one(folder, pattern)
        if not matches:
            missing.append(f"{kind} ({folder_name}/{pattern})")
        elif len(matches) > 1:
            ambiguous.append(
                f"{kind} ({', '.join(m.name for m in matches)})"
            )
        else:
            found[kind] = matches[0]

    problems = []
    if missing:
        problems.append("missing " + "; ".join(missing))
    if ambiguous:
        problems.append("more than one candidate for " + "; ".join(ambiguous))
    if problems:
        raise MissingInputError(
            f"{layout.entry}: DWI data not complete. Raw nii, bvec, "
            f"bval, json and T1 must be available exactly once: "
            + " | ".join(problems)
        )

    for kind, p in found.items():
        logger.debug("%s: %s -> %s", layout.entry, kind, p)
    return DwiInputs(**found)
