"""
ACT connectome workflow driver.

Performs all steps for anatomically constrained tractography (ACT) after
Smith et al. (2013, NeuroImage), from raw BIDS diffusion data to a
connectome matrix per session. Every computation is done by MRtrix3, FSL
and ANTs; see https://mrtrix.readthedocs.io/en/latest/ for each command.

Input data must follow BIDS, with exactly one raw DWI series and one T1 per
session:
    <input>/sub-<S>/ses-<T>/dwi/   (.nii.gz, .bvec, .bval, .json)
    <input>/sub-<S>/ses-<T>/anat/  (*T1w*.nii.gz)

Pipeline:
    0. Preflight: folders, raw files and gradient tables of EVERY session,
       atlas and MNI template, external executables. Nothing runs if any
       check fails.
    1. Part 1 for every session: conversion, denoising, distortion and bias
       correction, response function estimation
    2. Group average response function
    3. Part 2 for every session: CSD, T1 -> DWI registration, atlas
       registration, 5TT segmentation, ACT, SIFT, connectome, connectome QA

Usage:
    act-connectome -s subjects.csv -i /data/bids -o /data/bids/derivatives
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

from tqdm import tqdm

from act_connectome import csd, preprocessing, qa, registration, tractography
from act_connectome.atlas import (
    PARCELLATION_FOLDER,
    locate_mni_template,
    locate_parcellation,
)
from act_connectome.layout import (
    DwiInputs,
    SessionLayout,
    check_bids_folders,
    find_dwi_inputs,
    session_layout,
)
from act_connectome.runner import (
    ANTS_EXECUTABLES,
    FSL_EXECUTABLES,
    MRTRIX_EXECUTABLES,
    CommandRunner,
    require_executables,
)
from act_connectome.subjects import SessionEntry, read_subject_list
from act_connectome.utils import (
    LayoutError,
    PipelineError,
    RPE_MODES,
    StageOutputError,
    load_config,
    log_banner,
    setup_logging,
)

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """Per-session outcome of a pipeline run."""

    connectomes: dict[SessionEntry, Path] = field(default_factory=dict)
    failures: dict[SessionEntry, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


# ---------------------------------------------------------------------------
# Preflight
# ---------------------------------------------------------------------------

def required_executables(config: dict) -> list[str]:
    """External programs the configured pipeline will call."""
    names = MRTRIX_EXECUTABLES + FSL_EXECUTABLES
    names.append(config["DWIPREPROC_COMMAND"])
    if config["DEGIBBS"]:
        names.append("mrdegibbs")
    if config["BIAS_CORRECTION"] == "ants":
        names.extend(ANTS_EXECUTABLES)
    return names


def preflight(
    entries: list[SessionEntry],
    input_dir: Path,
    output_dir: Path,
    config: dict,
) -> list[tuple[SessionLayout, DwiInputs]]:
    """
    Resolve and check the inputs of every session.

    All sessions are checked before reporting, so one run lists every
    problem in the dataset.

    Raises
    ------
    PipelineError
        If any session is incomplete.
    """
    if not input_dir.is_dir():
        raise LayoutError(f"Input folder does not exist: {input_dir}")

    sessions = []
    problems = []
    reverse_pe = config["RPE_MODE"] == "se_epi"
    for entry in entries:
        layout = session_layout(input_dir, output_dir, entry)
        try:
            check_bids_folders(layout)
            inputs = find_dwi_inputs(layout, reverse_pe=reverse_pe)
            qa.check_gradient_table(inputs.dwi, inputs.bval, inputs.bvec)
        except PipelineError as exc:
            logger.error("%s", exc)
            problems.append(str(exc))
            continue
        sessions.append((layout, inputs))

    if problems:
        raise PipelineError(
            f"{len(problems)} of {len(entries)} session(s) failed input checks; "
            "no processing was started"
        )
    logger.info("Input checks passed for %d session(s)", len(sessions))
    return sessions


# ---------------------------------------------------------------------------
# Per-session parts
# ---------------------------------------------------------------------------

def _run_part2(layout: SessionLayout, inputs: DwiInputs,
               group_response: Path, atlas: registration.AtlasImages,
               runner: CommandRunner, config: dict, run_qa: bool) -> Path:
    logger.info("-" * 40)
    logger.info("CSD, registration and tractography for %s", layout.entry)

    fod = csd.compute_fod(layout, group_response, runner, config)
    t1_reg = registration.register_t1_to_dwi(layout, inputs, runner, config)
    parcellation = registration.register_atlas(
        layout, t1_reg, atlas, runner, config,
    )
    connectome = tractography.run_tractography(
        layout, fod, t1_reg, parcellation, runner, config,
    )

    if run_qa and not runner.dry_run:
        report = qa.check_connectome(connectome, parcellation)
        if not report.ok:
            raise StageOutputError(report.summary())
        logger.info("%s", report.summary())
    return connectome


def run_pipeline(
    entries: list[SessionEntry],
    input_dir: str | Path,
    output_dir: str | Path,
    config: dict,
    runner: CommandRunner,
    parcellation_dir: str | Path | None = None,
    keep_going: bool = False,
    run_qa: bool = True,
) -> RunSummary:
    """
    Run the whole workflow over the listed sessions.

    Parameters
    ----------
    entries : list of SessionEntry
    input_dir, output_dir : str or Path
        BIDS input root and derivatives root.
    config : dict
        Pipeline configuration (see utils.DEFAULT_CONFIG).
    runner : CommandRunner
    parcellation_dir : str or Path, optional
        Folder with the MNI atlas and template. Defaults to
        ``<output_dir>/PARCELLATION``.
    keep_going : bool
        Record a failing session and continue with the others instead of
        aborting the run.
    run_qa : bool
        Check every connectome once it is written.

    Raises
    ------
    PipelineError
        On preflight failure, when no session survives part 1, or on any
        session failure unless ``keep_going`` is set.
    """
    input_dir = Path(input_dir)
    output_dir = Path(output_dir)
    parcellation_dir = (
        Path(parcellation_dir) if parcellation_dir
        else output_dir / PARCELLATION_FOLDER
    )

    log_banner("STEP 0: Setup and input checks")
    sessions = preflight(entries, input_dir, output_dir, config)
    atlas = registration.AtlasImages(
        parcellation=locate_parcellation(parcellation_dir, config["ATLAS_PATTERN"]),
        mni_template=locate_mni_template(parcellation_dir, config["MNI_TEMPLATE"]),
    )
    if not runner.dry_run:
        require_executables(required_executables(config))

    rfe_dir = output_dir / config["RFE_FOLDER"]
    if not rfe_dir.is_dir() and not runner.dry_run:
        logger.info("Creating response function folder: %s", rfe_dir)
        rfe_dir.mkdir(parents=True, exist_ok=True)

    summary = RunSummary()

    def fail(entry: SessionEntry, exc: PipelineError) -> None:
        if not keep_going:
            raise exc
        logger.error("%s failed, continuing with remaining sessions: %s", entry, exc)
        summary.failures[entry] = str(exc)

    # --- Part 1 ---
    log_banner("PART 1: Preprocessing and response functions")
    responses = []
    for layout, inputs in tqdm(sessions, desc="Preprocessing"):
        try:
            responses.append(preprocessing.run_preprocessing(
                layout, inputs, runner, config, rfe_dir,
            ))
        except PipelineError as exc:
            fail(layout.entry, exc)

    # --- Group response ---
    log_banner("Group average response function")
    group_response = csd.average_responses(rfe_dir, runner, responses)

    # --- Part 2 ---
    log_banner("PART 2: CSD, ACT and connectome creation")
    remaining = [s for s in sessions if s[0].entry not in summary.failures]
    for layout, inputs in tqdm(remaining, desc="Tractography"):
        try:
            summary.connectomes[layout.entry] = _run_part2(
                layout, inputs, group_response, atlas, runner, config, run_qa,
            )
        except PipelineError as exc:
            fail(layout.entry, exc)

    log_banner("Pipeline complete")
    for entry, path in summary.connectomes.items():
        logger.info("  %s: %s", entry, path)
    for entry, reason in summary.failures.items():
        logger.error("  %s FAILED: %s", entry, reason)
    return summary


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Anatomically constrained tractography and structural connectome "
            "construction for a list of BIDS sessions (MRtrix3, FSL, ANTs)."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Subject list: CSV with 2 columns (subject ID, session ID).\n"
            "Outputs are written to <output>/sub-<S>/ses-<T>/{dwi,anat}/."
        ),
    )
    parser.add_argument(
        "-s", "--subject-list", required=True,
        help="CSV file of subject and session IDs",
    )
    parser.add_argument(
        "-i", "--input-dir", required=True,
        help="BIDS dataset root holding sub-*/ses-*/{dwi,anat}",
    )
    parser.add_argument(
        "-o", "--output-dir", required=True,
        help="Derivatives root for all pipeline outputs",
    )
    parser.add_argument(
        "--parcellation-dir", default=None,
        help="Folder with the MNI atlas and template (default: <output>/PARCELLATION)",
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to JSON config file with parameter overrides",
    )
    parser.add_argument(
        "--force", action="store_true",
        help=(
            "Re-run stages whose outputs already exist. Existing outputs are "
            "otherwise reused as-is, so use this after an interrupted run "
            "that may have left incomplete files"
        ),
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Log the commands that would run without executing them",
    )
    parser.add_argument(
        "--keep-going", action="store_true",
        help="Continue with the remaining sessions when one fails",
    )
    parser.add_argument(
        "--nthreads", type=int, default=None,
        help="Number of threads for MRtrix3 commands",
    )
    parser.add_argument(
        "--degibbs", action="store_true",
        help="Remove Gibbs ringing artefacts after denoising",
    )
    parser.add_argument(
        "--rpe", choices=RPE_MODES, default=None,
        help=(
            "Phase encoding design: 'header' reads it from the DWI sidecar; "
            "'se_epi' also uses a reverse phase-encoded b=0 series "
            "from fmap/*epi.nii.gz"
        ),
    )
    parser.add_argument(
        "--skip-qa", action="store_true",
        help="Do not validate the connectome matrices",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log debug messages and external tool output",
    )
    return parser


def main(argv=None) -> int:
    """Command-line entry point; returns the process exit status."""
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        if args.degibbs:
            config["DEGIBBS"] = True
        if args.rpe:
            config["RPE_MODE"] = args.rpe

        entries = read_subject_list(args.subject_list)
        runner = CommandRunner(
            dry_run=args.dry_run, force=args.force, nthreads=args.nthreads,
        )
        summary = run_pipeline(
            entries,
            args.input_dir,
            args.output_dir,
            config,
            runner,
            parcellation_dir=args.parcellation_dir,
            keep_going=args.keep_going,
            run_qa=not args.skip_qa,
        )
    except PipelineError as exc:
        logger.error("ERROR: %s", exc)
        return 1

    return 0 if summary.ok else 1


if __name__ == "__main__":
    sys.exit(main())
