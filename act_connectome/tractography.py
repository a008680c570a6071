"""
Tissue segmentation, anatomically constrained tractography and connectome.

Steps:
    1. Five-tissue-type segmentation of the registered T1 (FSL FAST/FIRST
       through 5ttgen)
    2. Grey matter / white matter interface mask for seeding
    3. ACT probabilistic tractography seeded at the interface, with
       backtracking (20M streamlines by default)
    4. SIFT filtering down to 5M streamlines by default
    5. Symmetric, zero-diagonal connectome over the registered parcellation

Output files:
    anat/sub-<S>_ses-<T>_T1w_bet_regDWI_seg.nii.gz
    anat/sub-<S>_ses-<T>_T1w_bet_regDWI_seg-gmwmi.nii.gz
    dwi/sub-<S>_ses-<T>_tracts.tck
    dwi/sub-<S>_ses-<T>_tracts-sift.tck
    dwi/sub-<S>_ses-<T>_connectome_zeros.csv
"""

import logging
from pathlib import Path

from act_connectome.layout import SessionLayout
from act_connectome.runner import CommandRunner

logger = logging.getLogger(__name__)

T1_SEGMENTATION = "T1w_bet_regDWI_seg.nii.gz"
T1_GMWMI = "T1w_bet_regDWI_seg-gmwmi.nii.gz"
TRACTOGRAM = "tracts.tck"
TRACTOGRAM_SIFT = "tracts-sift.tck"
CONNECTOME = "connectome_zeros.csv"


def _completed(step: str, layout: SessionLayout) -> None:
    logger.info("#" * 57)
    logger.info("%s for %s completed", step, layout.entry)
    logger.info("#" * 57)


def segment_tissues(layout: SessionLayout, t1_reg: Path,
                    runner: CommandRunner) -> tuple[Path, Path]:
    """
    Build the 5TT image and its GM-WM interface.

    The T1 is already brain-extracted, hence ``-premasked``.
    """
    seg = layout.anat_output(T1_SEGMENTATION)
    gmwmi = layout.anat_output(T1_GMWMI)
    runner.run(["5ttgen", "fsl", t1_reg, seg, "-premasked"], outputs=[seg])
    runner.run(["5tt2gmwmi", seg, gmwmi], outputs=[gmwmi])
    return seg, gmwmi


def generate_tracts(layout: SessionLayout, fod: Path, seg: Path, gmwmi: Path,
                    runner: CommandRunner, config: dict) -> Path:
    tck = layout.dwi_output(TRACTOGRAM)
    runner.run(
        ["tckgen", fod, tck, "-act", seg, "-seed_gmwmi", gmwmi,
         "-backtrack", "-select", config["TCKGEN_SELECT"]],
        outputs=[tck],
    )
    _completed("tckgen", layout)
    return tck


def filter_tracts(layout: SessionLayout, tck: Path, fod: Path, seg: Path,
                  runner: CommandRunner, config: dict) -> Path:
    sift = layout.dwi_output(TRACTOGRAM_SIFT)
    runner.run(
        ["tcksift", tck, fod, sift, "-act", seg,
         "-term_number", config["TCKSIFT_TERM_NUMBER"]],
        outputs=[sift],
    )
    _completed("tcksift", layout)
    return sift


def build_connectome(layout: SessionLayout, tck: Path, parcellation: Path,
                     runner: CommandRunner) -> Path:
    out = layout.dwi_output(CONNECTOME)
    runner.run(
        ["tck2connectome", "-symmetric", "-zero_diagonal",
         tck, parcellation, out],
        outputs=[out],
    )
    _completed("connectome", layout)
    return out


def run_tractography(layout: SessionLayout, fod: Path, t1_reg: Path,
                     parcellation: Path, runner: CommandRunner,
                     config: dict) -> Path:
    """
    Run segmentation, ACT, SIFT and connectome construction for one session.

    Returns
    -------
    Path
        The connectome CSV.
    """
    seg, gmwmi = segment_tissues(layout, t1_reg, runner)
    tck = generate_tracts(layout, fod, seg, gmwmi, runner, config)
    sift = filter_tracts(layout, tck, fod, seg, runner, config)
    return build_connectome(layout, sift, parcellation, runner)
