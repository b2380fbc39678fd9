"""Tests for MP2RAGE dataset discovery and batch denoising"""

import os

import numpy as np
import pandas as pd
import pytest

import dataset_paths
import mp2rage_robust_denoise as mp2


def touch(path):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"")
    return str(path)


@pytest.fixture
def dataset(tmp_path):
    root = tmp_path / "data"
    anat = root / "sub-01" / "ses-7T" / "anat"
    files = {
        "UNIT1": touch(anat / "sub-01_ses-7T_UNIT1.nii.gz"),
        "INV1": touch(anat / "sub-01_ses-7T_inv-1_MP2RAGE.nii.gz"),
        "INV2": touch(anat / "sub-01_ses-7T_inv-2_MP2RAGE.nii.gz"),
    }
    touch(anat / "sub-01_ses-7T_T1map.nii.gz")
    touch(root / "sub-02" / "anat" / "sub-02_UNIT1.nii")
    return root, files


class TestGetMp2ragePaths:
    def test_finds_triples(self, dataset):
        root, files = dataset
        paths = dataset_paths.get_mp2rage_paths(str(root))
        assert isinstance(paths, pd.DataFrame)
        assert list(paths.columns) == ["subj_id", "session", "sequence", "path"]
        sub01 = paths[paths["subj_id"] == "01"]
        assert set(sub01["session"]) == {"7T"}
        assert dict(zip(sub01["sequence"], sub01["path"])) == files

    def test_without_session(self, dataset):
        root, _ = dataset
        paths = dataset_paths.get_mp2rage_paths(str(root))
        sub02 = paths[paths["subj_id"] == "02"]
        assert list(sub02["session"]) == [""]
        assert list(sub02["sequence"]) == ["UNIT1"]

    def test_missing_folder(self, tmp_path):
        with pytest.raises(ValueError, match="not an existing folder"):
            dataset_paths.get_mp2rage_paths(str(tmp_path / "nothing"))

    def test_ambiguous_match(self, dataset):
        root, _ = dataset
        touch(root / "sub-01" / "ses-7T" / "anat" / "sub-01_ses-7T_run-2_UNIT1.nii.gz")
        with pytest.raises(ValueError, match="More than 1 file"):
            dataset_paths.get_mp2rage_paths(str(root))

    def test_select_single_path(self, dataset):
        root, files = dataset
        paths = dataset_paths.get_mp2rage_paths(str(root))
        assert dataset_paths.select_single_path(paths, "01", "7T", "INV2") == files["INV2"]
        assert dataset_paths.select_single_path(paths, "02", "", "INV1") is None


class TestRunAllMp2rageDenoise:
    def test_denoises_complete_sets(self, tmp_path, write_nifti, mp2rage_arrays):
        uni, inv1, inv2 = mp2rage_arrays
        anat = os.path.join("data", "sub-01", "ses-7T", "anat")
        write_nifti(os.path.join(anat, "sub-01_ses-7T_UNIT1.nii.gz"), np.round(uni).astype(np.int16))
        write_nifti(os.path.join(anat, "sub-01_ses-7T_inv-1_MP2RAGE.nii.gz"), np.round(inv1).astype(np.int16))
        write_nifti(os.path.join(anat, "sub-01_ses-7T_inv-2_MP2RAGE.nii.gz"), np.round(inv2).astype(np.int16))
        write_nifti(os.path.join("data", "sub-02", "anat", "sub-02_UNIT1.nii"), np.round(uni).astype(np.int16))
        outdir = tmp_path / "derivatives"

        results = mp2.run_all_mp2rage_denoise(str(tmp_path / "data"), str(outdir), beta=0.2)

        assert len(results) == 1
        row = results.iloc[0]
        assert (row["subj_id"], row["session"]) == ("01", "7T")
        assert row["path"] == str(outdir / "sub-01" / "ses-7T" / "denoised_sub-01_ses-7T_UNIT1.nii.gz")
        assert os.path.isfile(row["path"])
        assert os.path.isfile(outdir / "sub-01" / "ses-7T" / mp2.BORDER_ENHANCE_FILENAME)
        assert row["nonfinite_output"] == 0

    def test_empty_dataset(self, tmp_path):
        (tmp_path / "data").mkdir()
        results = mp2.run_all_mp2rage_denoise(str(tmp_path / "data"), str(tmp_path / "out"))
        assert results.empty
        assert "zero_uni" in results.columns
