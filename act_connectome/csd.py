"""
Group response function and constrained spherical deconvolution (CSD).

The white matter responses of all sessions are averaged once, after part 1,
and the single average response is used to deconvolve every session.
"""

import logging
from pathlib import Path

from act_connectome.layout import SessionLayout
from act_connectome.preprocessing import DWI_BIASCORR, RESPONSE_SUFFIX
from act_connectome.runner import CommandRunner
from act_connectome.utils import MissingInputError

logger = logging.getLogger(__name__)

GROUP_RESPONSE = "avgwm-rfe.txt"
DWI_MASK = "dwi-preproc_mask.mif"
DWI_MASK_DILATED = "dwi-preproc_mask-dil2.mif"
FOD = "dwi_fod.mif"


def average_responses(rfe_dir: Path, runner: CommandRunner,
                      responses: list[Path] | None = None) -> Path:
    """
    Average per-session response functions into ``avgwm-rfe.txt``.

    Parameters
    ----------
    rfe_dir : Path
        Shared response folder.
    runner : CommandRunner
    responses : list of Path, optional
        Responses to average. Defaults to every ``*_dwi_wm-rfe.txt`` file
        in *rfe_dir*; the group average itself is never an input.

    Raises
    ------
    MissingInputError
        If there is nothing to average.
    """
    rfe_dir = Path(rfe_dir)
    if responses is None:
        responses = sorted(rfe_dir.glob(f"*_{RESPONSE_SUFFIX}"))
    responses = [r for r in responses if r.name != GROUP_RESPONSE]
    if not responses:
        raise MissingInputError(
            f"No subject response functions found in {rfe_dir}"
        )

    out = rfe_dir / GROUP_RESPONSE
    logger.info("Averaging %d response function(s) -> %s", len(responses), out)
    runner.run(["average_response", *responses, out], outputs=[out])
    return out


def compute_fod(layout: SessionLayout, group_response: Path,
                runner: CommandRunner, config: dict) -> Path:
    """
    Estimate the fibre orientation distribution of one session.

    The brain mask is dilated so that it does not cut into tissue needed
    for streamline termination.
    """
    dwi = layout.dwi_output(DWI_BIASCORR)
    mask = layout.dwi_output(DWI_MASK)
    mask_dilated = layout.dwi_output(DWI_MASK_DILATED)
    fod = layout.dwi_output(FOD)

    runner.run(["dwi2mask", dwi, mask], outputs=[mask])
    runner.run(
        ["maskfilter", mask, "dilate",
         "-npass", config["MASK_DILATE_NPASS"], mask_dilated],
        outputs=[mask_dilated],
    )
    runner.run(
        ["dwi2fod", config["CSD_ALGORITHM"], dwi, group_response, fod,
         "-mask", mask_dilated],
        outputs=[fod],
    )
    return fod
