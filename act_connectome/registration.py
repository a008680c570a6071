"""
T1 -> DWI registration and atlas -> subject registration.

The T1 image is cropped, skull-stripped and rigidly registered (FLIRT, 6
dof) to the mean DWI volume. The FLIRT matrix is converted to an MRtrix3
transform and applied to the header only, so the T1 keeps its native voxel
resolution. The MNI atlas is then brought into the registered T1 space with
an affine FLIRT registration of the MNI template, applied to the atlas with
nearest-neighbour interpolation, and stored as integer labels.

Output files (in <output>/sub-<S>/ses-<T>/anat/):
    sub-<S>_ses-<T>_T1w_crop.nii.gz, sub-<S>_ses-<T>_T1w_bet.nii.gz
    sub-<S>_ses-<T>_T1w_bet_regDWI.nii.gz
    <PARC>_reg.nii.gz, <PARC>_reg_int.nii.gz
    registration_files/T12DWI.mat, T12DWI.mrtrix, MNI2SUB.mat
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from act_connectome.layout import DwiInputs, SessionLayout
from act_connectome.preprocessing import DWI_BIASCORR
from act_connectome.runner import CommandRunner

logger = logging.getLogger(__name__)

DWI_BIASCORR_NII = "dwi_dn-preproc-bcor.nii.gz"
DWI_MEAN_3D = "dwi_dn-preproc-bcor-3D.nii.gz"
T1_CROP = "T1w_crop.nii.gz"
T1_BET = "T1w_bet.nii.gz"
T1_REG = "T1w_bet_regDWI.nii.gz"
T1_TO_DWI_FLIRT = "T12DWI.mat"
T1_TO_DWI_MRTRIX = "T12DWI.mrtrix"
MNI_TO_SUBJECT = "MNI2SUB.mat"


@dataclass(frozen=True)
class AtlasImages:
    """MNI-space images needed by the atlas registration."""

    parcellation: Path
    mni_template: Path


def parcellation_outputs(layout: SessionLayout, name: str) -> tuple[Path, Path]:
    """Registered atlas and its integer-typed copy."""
    return (
        layout.out_anat_dir / f"{name}_reg.nii.gz",
        layout.out_anat_dir / f"{name}_reg_int.nii.gz",
    )


def mean_dwi_volume(layout: SessionLayout, runner: CommandRunner) -> Path:
    """Convert the corrected DWI to NIfTI and average it over volumes."""
    dwi_mif = layout.dwi_output(DWI_BIASCORR)
    dwi_nii = layout.dwi_output(DWI_BIASCORR_NII)
    dwi_3d = layout.dwi_output(DWI_MEAN_3D)

    runner.run(["mrconvert", dwi_mif, dwi_nii], outputs=[dwi_nii])
    runner.run(["mrmath", dwi_nii, "mean", "-axis", 3, dwi_3d], outputs=[dwi_3d])
    return dwi_3d


def extract_brain(layout: SessionLayout, inputs: DwiInputs,
                  runner: CommandRunner, config: dict) -> Path:
    """
    Crop the T1 field of view and run BET.

    A low fractional intensity threshold is used so the extraction does not
    cut off grey matter (0 permissive, 1 restrictive, 0.5 BET default).
    """
    crop = layout.anat_output(T1_CROP)
    bet = layout.anat_output(T1_BET)

    runner.run(["robustfov", "-i", inputs.t1, "-r", crop],
               outputs=[crop], mrtrix=False)
    runner.run(
        ["bet", crop, bet, "-f", config["BET_FRACTIONAL_INTENSITY"], "-R"],
        outputs=[bet], mrtrix=False,
    )
    return bet


def register_t1_to_dwi(layout: SessionLayout, inputs: DwiInputs,
                       runner: CommandRunner, config: dict) -> Path:
    """Rigidly register the brain-extracted T1 into diffusion space."""
    logger.info("Registering T1 to DWI for %s", layout.entry)
    if not runner.dry_run:
        layout.make_output_dirs()

    dwi_3d = mean_dwi_volume(layout, runner)
    bet = extract_brain(layout, inputs, runner, config)

    flirt_mat = layout.registration_output(T1_TO_DWI_FLIRT)
    mrtrix_mat = layout.registration_output(T1_TO_DWI_MRTRIX)
    t1_reg = layout.anat_output(T1_REG)

    runner.run(
        ["flirt", "-in", bet, "-ref", dwi_3d, "-omat", flirt_mat,
         "-dof", config["T1_TO_DWI_DOF"]],
        outputs=[flirt_mat], mrtrix=False,
    )
    runner.run(
        ["transformconvert", flirt_mat, bet, dwi_3d, "flirt_import", mrtrix_mat],
        outputs=[mrtrix_mat],
    )
    runner.run(
        ["mrtransform", bet, "-linear", mrtrix_mat, t1_reg],
        outputs=[t1_reg],
    )
    return t1_reg


def register_atlas(layout: SessionLayout, t1_reg: Path, atlas: AtlasImages,
                   runner: CommandRunner, config: dict) -> Path:
    """
    Bring the MNI parcellation into the registered T1 space.

    Returns
    -------
    Path
        Integer-labelled parcellation used as connectome nodes.
    """
    logger.info("Registering atlas to %s", layout.entry)
    mni_mat = layout.registration_output(MNI_TO_SUBJECT)
    parc_reg, parc_int = parcellation_outputs(layout, config["PARCELLATION_NAME"])

    # default affine registration (12 dof)
    runner.run(
        ["flirt", "-in", atlas.mni_template, "-ref", t1_reg, "-omat", mni_mat],
        outputs=[mni_mat], mrtrix=False,
    )
    runner.run(
        ["flirt", "-in", atlas.parcellation, "-ref", t1_reg, "-out", parc_reg,
         "-init", mni_mat, "-applyxfm", "-interp", "nearestneighbour"],
        outputs=[parc_reg], mrtrix=False,
    )
    runner.run(
        ["mrconvert", parc_reg, parc_int, "-datatype", "uint32"],
        outputs=[parc_int],
    )
    return parc_int
