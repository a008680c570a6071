"""
Shared fixtures: a tiny synthetic BIDS dataset and parcellation folder.
"""

import json

import nibabel as nib
import numpy as np
import pytest

from act_connectome.subjects import SessionEntry

N_VOLUMES = 4
AFFINE = np.eye(4)


def write_session(root, subject, session, n_volumes=N_VOLUMES, skip=()):
    """
    Create ``sub-<subject>/ses-<session>/{dwi,anat}`` with raw inputs.

    Kinds listed in *skip* ("dwi", "bvec", "bval", "json", "t1") are not
    written.
    """
    ses_dir = root / f"sub-{subject}" / f"ses-{session}"
    dwi_dir = ses_dir / "dwi"
    anat_dir = ses_dir / "anat"
    dwi_dir.mkdir(parents=True)
    anat_dir.mkdir(parents=True)

    stem = f"sub-{subject}_ses-{session}"
    if "dwi" not in skip:
        data = np.zeros((2, 2, 2, n_volumes), dtype=np.float32)
        nib.save(nib.Nifti1Image(data, AFFINE), str(dwi_dir / f"{stem}_dwi.nii.gz"))
    if "bval" not in skip:
        bvals = [0] + [1000] * (n_volumes - 1)
        (dwi_dir / f"{stem}_dwi.bval").write_text(" ".join(map(str, bvals)) + "\n")
    if "bvec" not in skip:
        rows = [" ".join(["0"] + ["1"] * (n_volumes - 1))] * 3
        (dwi_dir / f"{stem}_dwi.bvec").write_text("\n".join(rows) + "\n")
    if "json" not in skip:
        (dwi_dir / f"{stem}_dwi.json").write_text(
            json.dumps({"PhaseEncodingDirection": "j-", "TotalReadoutTime": 0.05})
        )
    if "t1" not in skip:
        t1 = np.zeros((4, 4, 4), dtype=np.float32)
        nib.save(nib.Nifti1Image(t1, AFFINE), str(anat_dir / f"{stem}_T1w.nii.gz"))
    return ses_dir


@pytest.fixture
def bids_dir(tmp_path):
    """BIDS root with two complete sessions: sub-01/ses-1 and sub-02/ses-1."""
    root = tmp_path / "bids"
    write_session(root, "01", "1")
    write_session(root, "02", "1")
    return root


@pytest.fixture
def entries():
    return [SessionEntry("01", "1"), SessionEntry("02", "1")]


@pytest.fixture
def subject_list(tmp_path):
    path = tmp_path / "subjects.csv"
    path.write_text("01,1\n02,1\n")
    return path


@pytest.fixture
def parcellation_dir(tmp_path, monkeypatch):
    """Folder holding an MNI atlas and template; FSLDIR is cleared."""
    monkeypatch.delenv("FSLDIR", raising=False)
    d = tmp_path / "out" / "PARCELLATION"
    d.mkdir(parents=True)
    labels = np.zeros((4, 4, 4), dtype=np.int16)
    labels[0, :, :] = 1
    labels[1, :, :] = 2
    labels[2, :, :] = 3
    nib.save(
        nib.Nifti1Image(labels, AFFINE),
        str(d / "Schaefer2018_400Parcels_7Networks_order_FSLMNI152_1mm.nii.gz"),
    )
    nib.save(
        nib.Nifti1Image(np.zeros((4, 4, 4), dtype=np.float32), AFFINE),
        str(d / "MNI152_T1_1mm_brain.nii.gz"),
    )
    return d
