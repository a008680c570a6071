"""
Anatomically constrained tractography (ACT) connectome workflow.

Drives MRtrix3, FSL and ANTs over a BIDS dataset, one session at a time,
from raw diffusion data to a structural connectome matrix per subject.
"""

__version__ = "0.1.0"
