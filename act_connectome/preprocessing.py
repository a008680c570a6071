"""
Part 1 of the workflow: diffusion preprocessing and response estimation.

Per session:
    1. Convert the raw DWI to .mif, importing the FSL gradient table and the
       JSON sidecar into the header
    2. MP-PCA denoising (noise map kept)
    3. Optional Gibbs ringing removal
    4. Motion, eddy-current and susceptibility distortion correction
    5. ANTs (or FSL) bias field correction
    6. White matter response function estimation into the shared response
       folder, where the group average is built before part 2

Output files (in <output>/sub-<S>/ses-<T>/dwi/):
    sub-<S>_ses-<T>_dwi.mif
    sub-<S>_ses-<T>_dwi_dn.mif, sub-<S>_ses-<T>_dwi_noise.mif
    sub-<S>_ses-<T>_dwi_dn-preproc.mif
    sub-<S>_ses-<T>_dwi_dn-preproc-bcor.mif
"""

import logging
from pathlib import Path

from act_connectome.layout import DwiInputs, SessionLayout
from act_connectome.runner import CommandRunner

logger = logging.getLogger(__name__)

DWI_MIF = "dwi.mif"
DWI_DENOISED = "dwi_dn.mif"
DWI_NOISEMAP = "dwi_noise.mif"
DWI_DEGIBBS = "dwi_dn-degibbs.mif"
DWI_PREPROC = "dwi_dn-preproc.mif"
DWI_BIASCORR = "dwi_dn-preproc-bcor.mif"
REVERSE_B0_MIF = "dwi0.mif"
RESPONSE_SUFFIX = "dwi_wm-rfe.txt"


def response_path(layout: SessionLayout, rfe_dir: Path) -> Path:
    """Per-session white matter response file in the shared folder."""
    return Path(rfe_dir) / f"{layout.entry.prefix}_{RESPONSE_SUFFIX}"


def convert_dwi(layout: SessionLayout, inputs: DwiInputs,
                runner: CommandRunner) -> Path:
    out = layout.dwi_output(DWI_MIF)
    runner.run(
        ["mrconvert", inputs.dwi, out,
         "-fslgrad", inputs.bvec, inputs.bval,
         "-json_import", inputs.json],
        outputs=[out],
    )
    return out


def denoise_dwi(layout: SessionLayout, dwi: Path,
                runner: CommandRunner) -> Path:
    out = layout.dwi_output(DWI_DENOISED)
    noise = layout.dwi_output(DWI_NOISEMAP)
    runner.run(["dwidenoise", dwi, out, "-noise", noise], outputs=[out, noise])
    return out


def remove_gibbs_ringing(layout: SessionLayout, dwi: Path,
                         runner: CommandRunner) -> Path:
    out = layout.dwi_output(DWI_DEGIBBS)
    runner.run(["mrdegibbs", dwi, out], outputs=[out])
    return out


def correct_distortions(layout: SessionLayout, dwi: Path, inputs: DwiInputs,
                        runner: CommandRunner, config: dict) -> Path:
    """
    Eddy-current, motion and susceptibility correction via FSL eddy/topup.

    Phase encoding is read from the header imported from the JSON sidecar.
    In ``se_epi`` mode the reverse phase-encoded b=0 series is converted and
    concatenated with the first b=0 of the DWI set for topup.
    """
    out = layout.dwi_output(DWI_PREPROC)
    cmd = [config["DWIPREPROC_COMMAND"], dwi, out, "-rpe_header"]

    if config["RPE_MODE"] == "se_epi":
        reverse = layout.dwi_output(REVERSE_B0_MIF)
        sidecar = inputs.reverse_b0.with_name(
            inputs.reverse_b0.name.replace(".nii.gz", ".json")
        )
        convert = ["mrconvert", inputs.reverse_b0, reverse]
        if sidecar.is_file():
            convert.extend(["-json_import", sidecar])
        runner.run(convert, outputs=[reverse])
        cmd.extend(["-se_epi", reverse, "-align_seepi"])

    runner.run(cmd, outputs=[out])
    return out


def correct_bias_field(layout: SessionLayout, dwi: Path,
                       runner: CommandRunner, config: dict) -> Path:
    out = layout.dwi_output(DWI_BIASCORR)
    runner.run(
        ["dwibiascorrect", dwi, out, f"-{config['BIAS_CORRECTION']}"],
        outputs=[out],
    )
    return out


def estimate_response(layout: SessionLayout, dwi: Path, rfe_dir: Path,
                      runner: CommandRunner, config: dict) -> Path:
    out = response_path(layout, rfe_dir)
    runner.run(
        ["dwi2response", config["RESPONSE_ALGORITHM"], dwi, out],
        outputs=[out],
    )
    return out


def run_preprocessing(layout: SessionLayout, inputs: DwiInputs,
                      runner: CommandRunner, config: dict,
                      rfe_dir: Path) -> Path:
    """
    Run part 1 for one session.

    Returns
    -------
    Path
        The session's white matter response file.
    """
    logger.info("-" * 40)
    logger.info("Preprocessing %s", layout.entry)
    if not runner.dry_run:
        layout.make_output_dirs()

    dwi = convert_dwi(layout, inputs, runner)
    dwi = denoise_dwi(layout, dwi, runner)
    if config["DEGIBBS"]:
        dwi = remove_gibbs_ringing(layout, dwi, runner)
    dwi = correct_distortions(layout, dwi, inputs, runner, config)
    dwi = correct_bias_field(layout, dwi, runner, config)
    response = estimate_response(layout, dwi, rfe_dir, runner, config)

    logger.info("Preprocessing for %s completed", layout.entry)
    return response
