"""
Consistency checks on pipeline inputs and outputs.
==================================================

Checks performed
----------------
1. **Gradient table** -- before anything runs, the raw DWI must be 4D and
   the ``.bval`` / ``.bvec`` files must describe exactly one gradient per
   volume (``bvec`` holds three rows).
2. **Connectome** -- after ``tck2connectome``, the matrix must be square,
   finite, non-negative, symmetric and have a zero diagonal. When the
   parcellation image is given, the node count must equal its highest
   label.

Usage
-----
::

    act-connectome-qa sub-01_ses-1_connectome_zeros.csv --parcellation Yeo400_reg_int.nii.gz
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

import nibabel as nib
import numpy as np
from nibabel.filebasedimages import ImageFileError

from act_connectome.utils import MissingInputError, setup_logging

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Gradient table
# ---------------------------------------------------------------------------

def _load_gradient_file(path: Path) -> np.ndarray:
    try:
        return np.atleast_2d(np.loadtxt(str(path), ndmin=2))
    except ValueError as exc:
        raise MissingInputError(f"Cannot parse gradient file {path}: {exc}") from exc


def check_gradient_table(dwi: str | Path, bval: str | Path,
                         bvec: str | Path) -> int:
    """
    Verify the FSL-format gradient files match the DWI series.

    Only the NIfTI header is read, not the image data.

    Returns
    -------
    int
        Number of diffusion volumes.

    Raises
    ------
    MissingInputError
        On any dimension mismatch.
    """
    dwi, bval, bvec = Path(dwi), Path(bval), Path(bvec)
    try:
        shape = nib.load(str(dwi)).shape
    except (OSError, ImageFileError) as exc:
        raise MissingInputError(f"Cannot read DWI header {dwi}: {exc}") from exc

    if len(shape) != 4:
        raise MissingInputError(
            f"DWI series must be 4D, {dwi.name} has shape {shape}"
        )
    n_volumes = shape[3]

    bvals = _load_gradient_file(bval)
    if bvals.size != n_volumes:
        raise MissingInputError(
            f"{bval.name} holds {bvals.size} b-values, "
            f"{dwi.name} has {n_volumes} volumes"
        )

    bvecs = _load_gradient_file(bvec)
    if bvecs.shape != (3, n_volumes):
        raise MissingInputError(
            f"{bvec.name} has shape {bvecs.shape}, expected (3, {n_volumes})"
        )

    logger.debug("Gradient table OK: %s (%d volumes)", dwi.name, n_volumes)
    return n_volumes


# ---------------------------------------------------------------------------
# Connectome
# ---------------------------------------------------------------------------

@dataclass
class ConnectomeReport:
    """Outcome of the connectome checks."""

    path: Path
    n_nodes: int = 0
    n_edges: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary(self) -> str:
        status = "PASS" if self.ok else "FAIL"
        text = (
            f"{status}: {self.path.name} "
            f"({self.n_nodes} nodes, {self.n_edges} non-zero edges)"
        )
        for failure in self.failures:
            text += f"\n  - {failure}"
        return text


def load_connectome(path: str | Path) -> np.ndarray:
    """Load a connectome matrix written by ``tck2connectome``."""
    path = Path(path)
    if not path.is_file():
        raise MissingInputError(f"Connectome not found: {path}")
    # tck2connectome writes comma-separated values; older versions used spaces
    with open(path) as f:
        first = f.readline()
    delimiter = "," if "," in first else None
    try:
        return np.loadtxt(str(path), delimiter=delimiter, ndmin=2)
    except ValueError as exc:
        raise MissingInputError(f"Cannot parse connectome {path}: {exc}") from exc


def check_connectome(path: str | Path,
                     parcellation: str | Path | None = None,
                     atol: float = 1e-6) -> ConnectomeReport:
    """
    Validate a symmetric, zero-diagonal connectome matrix.

    Parameters
    ----------
    path : str or Path
        Connectome CSV.
    parcellation : str or Path, optional
        Integer-labelled parcellation used to build the connectome.
    atol : float
        Tolerance for the symmetry and diagonal checks.
    """
    report = ConnectomeReport(path=Path(path))
    matrix = load_connectome(path)

    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        report.failures.append(f"matrix is not square: shape {matrix.shape}")
        return report

    report.n_nodes = matrix.shape[0]
    report.n_edges = int(np.count_nonzero(np.triu(matrix, k=1)))

    if not np.all(np.isfinite(matrix)):
        report.failures.append("matrix contains NaN or infinite values")
        return report
    if np.any(matrix < 0):
        report.failures.append("matrix contains negative values")
    if not np.allclose(matrix, matrix.T, atol=atol):
        report.failures.append("matrix is not symmetric")
    if not np.allclose(np.diag(matrix), 0.0, atol=atol):
        report.failures.append("diagonal is not zero")
    if report.n_edges == 0:
        report.failures.append("matrix has no connections")

    if parcellation is not None:
        try:
            labels = np.asarray(nib.load(str(parcellation)).dataobj)
        except (OSError, ImageFileError) as exc:
            raise MissingInputError(
                f"Cannot read parcellation {parcellation}: {exc}"
            ) from exc
        n_labels = int(labels.max()) if labels.size else 0
        if n_labels != report.n_nodes:
            report.failures.append(
                f"{report.n_nodes} nodes but parcellation has "
                f"{n_labels} labels"
            )

    return report


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main(argv=None) -> int:
    """Check one or more connectome matrices."""
    parser = argparse.ArgumentParser(
        description="Validate connectome matrices written by tck2connectome"
    )
    parser.add_argument("connectome", nargs="+", help="Connectome CSV file(s)")
    parser.add_argument(
        "--parcellation", type=str, default=None,
        help="Parcellation image the matrices were built from",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    status = 0
    for path in args.connectome:
        try:
            report = check_connectome(path, args.parcellation)
        except MissingInputError as exc:
            logger.error("%s", exc)
            status = 1
            continue
        if report.ok:
            logger.info("%s", report.summary())
        else:
            logger.error("%s", report.summary())
            status = 1
    return status


if __name__ == "__main__":
    sys.exit(main())
