"""
Shared pytest fixtures for the MP2RAGE denoising tools.

Synthetic volumes are built in memory or written as small NIfTI files to tmp_path.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

# the tools are plain modules in the repository root
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from volume import Volume, save_volume  # noqa: E402

FULL_SCALE = 4095.0


@pytest.fixture
def write_nifti(tmp_path):
    """Factory writing ``data`` unscaled to tmp_path/name with the given header scaling"""

    def _write(name, data, slope=1.0, inter=0.0):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        save_volume(Volume(np.asarray(data), scl_slope=slope, scl_inter=inter), str(path))
        return str(path)

    return _write


@pytest.fixture
def mp2rage_arrays():
    """
    Consistent INV1/INV2/UNI samples on a 4x3x2 grid.

    INV1 carries a random polarity which only survives in the UNI image, as in
    real magnitude reconstructions.
    """
    rng = np.random.default_rng(42)
    shape = (4, 3, 2)
    inv1_signed = rng.uniform(10, 200, shape) * rng.choice([-1, 1], shape)
    inv2 = rng.uniform(50, 300, shape)
    uni = inv1_signed * inv2 / (inv1_signed ** 2 + inv2 ** 2)
    uni_stored = (uni + 0.5) * FULL_SCALE
    return (uni_stored.astype(np.float32),
            np.abs(inv1_signed).astype(np.float32),
            inv2.astype(np.float32))


@pytest.fixture
def mp2rage_volumes(mp2rage_arrays):
    uni, inv1, inv2 = mp2rage_arrays
    return Volume(uni, filename='uni.nii'), Volume(inv1, filename='inv1.nii'), Volume(inv2, filename='inv2.nii')
