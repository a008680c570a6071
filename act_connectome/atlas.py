"""
Parcellation atlas and MNI template handling.

The atlas registration step needs two MNI-space images:
1. A parcellation atlas (Schaefer 2018, 400 parcels, 7 networks by default)
   kept in ``<output>/PARCELLATION`` or a user-supplied folder.
2. The MNI152 1mm brain template, looked up in the same folder and then in
   ``$FSLDIR/data/standard``.

The atlas can be fetched from the CBIG repository with the
``act-connectome-atlas`` command; SHA-256 checksums of fetched files are
recorded next to them in ``checksums.json``.

Usage:
    act-connectome-atlas --parcellation-dir PATH [--url URL]
"""

import argparse
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import requests
from tqdm import tqdm

from act_connectome.utils import (
    AtlasError,
    DEFAULT_CONFIG,
    PipelineError,
    load_metadata,
    log_banner,
    save_metadata,
    setup_logging,
    sha256_file,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Remote data references
# ---------------------------------------------------------------------------

SCHAEFER400_URL = (
    "https://raw.githubusercontent.com/ThomasYeoLab/CBIG/master/"
    "stable_projects/brain_parcellation/Schaefer2018_LocalGlobal/"
    "Parcellations/MNI/Schaefer2018_400Parcels_7Networks_order_FSLMNI152_1mm.nii.gz"
)

CHECKSUM_FILENAME = "checksums.json"
PARCELLATION_FOLDER = "PARCELLATION"


# ---------------------------------------------------------------------------
# Local lookup
# ---------------------------------------------------------------------------

def locate_parcellation(parcellation_dir: str | Path,
                        pattern: str = DEFAULT_CONFIG["ATLAS_PATTERN"]) -> Path:
    """
    Find the single parcellation atlas matching *pattern*.

    Raises
    ------
    AtlasError
        If the folder is missing, or zero or several files match.
    """
    parcellation_dir = Path(parcellation_dir)
    if not parcellation_dir.is_dir():
        raise AtlasError(
            f"Parcellation folder does not exist: {parcellation_dir}. "
            "Fetch the atlas first (act-connectome-atlas)."
        )
    candidates = sorted(parcellation_dir.rglob(pattern))
    if not candidates:
        raise AtlasError(
            f"No parcellation matching {pattern!r} found in {parcellation_dir}"
        )
    if len(candidates) > 1:
        raise AtlasError(
            f"Several parcellations match {pattern!r} in {parcellation_dir}: "
            + ", ".join(c.name for c in candidates)
        )
    logger.info("Using parcellation atlas: %s", candidates[0])
    return candidates[0]


def locate_mni_template(parcellation_dir: str | Path,
                        name: str = DEFAULT_CONFIG["MNI_TEMPLATE"]) -> Path:
    """
    Find the MNI brain template, preferring a copy in the parcellation folder.

    Falls back to the template shipped with FSL under
    ``$FSLDIR/data/standard``.
    """
    search = [Path(parcellation_dir)]
    fsl_dir = os.environ.get("FSLDIR", "")
    if fsl_dir:
        search.append(Path(fsl_dir) / "data" / "standard")

    for directory in search:
        if not directory.is_dir():
            continue
        matches = sorted(directory.rglob(name))
        if matches:
            logger.info("Using MNI template: %s", matches[0])
            return matches[0]

    raise AtlasError(
        f"MNI template {name!r} not found in "
        + ", ".join(str(d) for d in search)
        + ("" if fsl_dir else " (FSLDIR is not set)")
    )


# ---------------------------------------------------------------------------
# Checksums
# ---------------------------------------------------------------------------

def record_checksum(path: Path, source: str) -> str:
    """Hash *path* and store the digest in the folder's checksum registry."""
    registry_path = path.parent / CHECKSUM_FILENAME
    registry = load_metadata(registry_path) if registry_path.exists() else {}
    digest = sha256_file(path)
    registry[path.name] = {
        "sha256": digest,
        "source": source,
        "retrieved": datetime.now(timezone.utc).isoformat(),
    }
    save_metadata(registry, registry_path)
    logger.info("  SHA-256 %s  %s", digest[:16] + "...", path.name)
    return digest


# ---------------------------------------------------------------------------
# HTTP download
# ---------------------------------------------------------------------------

def fetch_atlas(url: str, dest: Path, chunk_size: int = 65536) -> Path:
    """
    Download an atlas file from *url* to *dest* with a progress bar.

    Skips the download if *dest* already exists.

    Raises
    ------
    AtlasError
        On any request failure, including a malformed URL. A partially
        written file is removed.
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    if dest.exists():
        logger.info("File already exists, skipping download: %s", dest)
        return dest

    logger.info("Downloading %s -> %s", url, dest)
    try:
        response = requests.get(url, stream=True, timeout=120)
        response.raise_for_status()
    except requests.ConnectionError as exc:
        raise AtlasError(
            f"Network error downloading {url}. Check your internet connection."
        ) from exc
    except requests.HTTPError as exc:
        raise AtlasError(
            f"HTTP error {response.status_code} downloading {url}."
        ) from exc
    except requests.Timeout as exc:
        raise AtlasError(f"Timeout downloading {url}. Try again later.") from exc
    except requests.RequestException as exc:
        raise AtlasError(f"Cannot download {url}: {exc}") from exc

    total = int(response.headers.get("content-length", 0))
    partial = dest.with_name(dest.name + ".part")
    try:
        with (
            open(partial, "wb") as f,
            tqdm(
                total=total or None,
                unit="B",
                unit_scale=True,
                desc=dest.name,
            ) as pbar,
        ):
            for chunk in response.iter_content(chunk_size=chunk_size):
                f.write(chunk)
                pbar.update(len(chunk))
    except requests.RequestException as exc:
        partial.unlink(missing_ok=True)
        raise AtlasError(f"Download of {url} was interrupted.") from exc
    partial.rename(dest)

    logger.info("Download complete: %s (%d bytes)", dest, dest.stat().st_size)
    record_checksum(dest, url)
    return dest


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main(argv=None) -> int:
    """Fetch the parcellation atlas into the parcellation folder."""
    parser = argparse.ArgumentParser(
        description="Fetch the parcellation atlas used for connectome nodes."
    )
    parser.add_argument(
        "--parcellation-dir", type=str, required=True,
        help="Folder that will hold the atlas (e.g. <output>/PARCELLATION)",
    )
    parser.add_argument(
        "--url", type=str, default=SCHAEFER400_URL,
        help="Atlas URL (default: Schaefer 2018 400 parcels, 7 networks, 1mm)",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    log_banner("Fetching parcellation atlas")

    parcellation_dir = Path(args.parcellation_dir)
    dest = parcellation_dir / args.url.rstrip("/").rsplit("/", 1)[-1]
    try:
        fetch_atlas(args.url, dest)
    except PipelineError as exc:
        logger.error("%s", exc)
        return 1

    try:
        locate_mni_template(parcellation_dir)
    except AtlasError as exc:
        logger.warning(
            "%s. Copy the template into %s before running the pipeline.",
            exc, parcellation_dir,
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
