import logging
import os
import sys
from collections import namedtuple

import numpy as np
import pandas as pd

import dataset_paths
import util
from volume import VolumeError, check_same_grid, load_volume, normalize_volume, save_volume

logger = logging.getLogger(__name__)

MAX12BIT = 4095.0
DEFAULT_BETA = 0.2
BORDER_ENHANCE_FILENAME = 'Border_enhance.nii'

# how voxels with uni == 0 or |uni| > 0.5 are handled, 'propagate' reproduces the
# reference outputs (non-finite values end up in the output)
POLICIES = ('propagate', 'reject', 'clamp')

EXIT_OK = 0
EXIT_USAGE = util.EXIT_USAGE
EXIT_READ_FAILURE = 2
EXIT_DEGENERATE = 3

VoxelTriple = namedtuple('VoxelTriple', ['inv1', 'inv2', 'uni'])


class DegeneracyReport(namedtuple('DegeneracyReport', ['zero_uni', 'negative_discriminant', 'nonfinite_output'])):
    __slots__ = ()

    @property
    def degenerate(self):
        return any(self)

    def __str__(self):
        return (f'{self.zero_uni} voxels with uni == 0, '
                f'{self.negative_discriminant} voxels with |uni| > 0.5, '
                f'{self.nonfinite_output} non-finite output voxels')


class NumericDegeneracyError(ValueError):
    def __init__(self, report):
        self.report = report
        super().__init__(f'degenerate voxels rejected: {report}')


def _check_policy(policy):
    if policy not in POLICIES:
        raise ValueError(f'unknown degeneracy policy {policy!r}, expected one of {POLICIES}')


def normalize_uni(uni, full_scale=MAX12BIT):
    """Rescale stored UNI values (0..full_scale) to the range -0.5..0.5 used in the paper."""
    return (uni - full_scale * 0.5) / full_scale


def count_degeneracies(uni):
    uni = np.asarray(uni)
    zero = int(np.count_nonzero(uni == 0))
    negative_discriminant = int(np.count_nonzero(np.abs(uni) > 0.5))
    return zero, negative_discriminant


def unmixing_roots(inv2, uni):
    """
    Both solutions for INV1 of uni = inv1*inv2 / (inv1^2 + inv2^2), given INV2 and
    the normalized UNI value.

    Returns:
        tuple: (root_high, root_low), non-finite where uni == 0 or |uni| > 0.5
    """
    inv2 = np.asarray(inv2, dtype=np.float64)
    uni = np.asarray(uni, dtype=np.float64)
    with np.errstate(divide='ignore', invalid='ignore'):
        half_inverse = 1 / (2 * uni)
        discriminant = np.sqrt(1 / (4 * np.square(uni)) - 1)
        root_high = inv2 * (half_inverse + discriminant)
        root_low = inv2 * (half_inverse - discriminant)
    return root_high, root_low


def _select_root(inv2, uni, clamp=False):
    uni = np.asarray(uni, dtype=np.float64)
    if clamp:
        uni = np.clip(uni, -0.5, 0.5)

    root_high, root_low = unmixing_roots(inv2, uni)
    inv1 = np.where(uni > 0, root_low, root_high)

    if clamp:
        # lower root tends to 0 for uni -> 0
        inv1 = np.where(uni == 0, 0.0, inv1)
    return inv1


def select_inv1(inv2, uni, policy='propagate'):
    """
    INV1 magnitude recovered from INV2 and the normalized UNI value.

    Without the phase, INV1 is ambiguous; positive UNI values take the lower root,
    all others the higher one.

    Args:
        inv2 (array_like): INV2 magnitude.
        uni (array_like): normalized UNI value, nominally in (-0.5, 0.5).
        policy (str): 'propagate' keeps non-finite roots, 'reject' raises
                      NumericDegeneracyError if any voxel is degenerate, 'clamp' clips
                      uni into [-0.5, 0.5] and takes inv1 = 0 where uni == 0.
    """
    _check_policy(policy)
    if policy == 'reject':
        zero, negative_discriminant = count_degeneracies(uni)
        if zero or negative_discriminant:
            raise NumericDegeneracyError(DegeneracyReport(zero, negative_discriminant, 0))
    return _select_root(inv2, uni, clamp=policy == 'clamp')


def robust_combination(inv1, inv2, beta, full_scale=MAX12BIT):
    """
    Regularized MP2RAGE combination (O'Brien et al., 2014), rescaled to 0..full_scale.

    ``beta`` must already be in full-scale units. beta = 0 gives the plain
    inv1*inv2 / (inv1^2 + inv2^2) combination, shifted by 0.5 and rescaled.
    """
    inv1 = np.asarray(inv1, dtype=np.float64)
    inv2 = np.asarray(inv2, dtype=np.float64)
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        ratio = (inv1 * inv2 - beta) / (np.square(inv1) + np.square(inv2) + 2 * beta)
    return (ratio + 0.5) * full_scale


def border_enhance(inv1, inv2):
    inv1 = np.asarray(inv1, dtype=np.float64)
    inv2 = np.asarray(inv2, dtype=np.float64)
    with np.errstate(divide='ignore', invalid='ignore'):
        return inv1 * inv2 / (np.square(inv1) + np.square(inv2))


def denoise_voxel(triple, beta=DEFAULT_BETA, full_scale=MAX12BIT, policy='propagate'):
    """Denoised UNI value of a single voxel, ``triple.uni`` in stored (0..full_scale) units."""
    uni = normalize_uni(np.float64(triple.uni), full_scale)
    inv1 = select_inv1(triple.inv2, uni, policy=policy)
    return float(robust_combination(inv1, triple.inv2, beta * full_scale, full_scale))


def assemble_outputs(uni, denoised, border):
    """
    Wrap the flat denoised and border-enhance buffers into volumes on the UNI grid.

    The denoised volume inherits the UNI scale slope with a zero intercept. A nonzero
    UNI intercept is reported but not corrected.
    """
    if uni.scl_inter != 0:
        logger.warning(f'the NIfTI scale factor of {uni.filename or "the UNI volume"} is asymmetric '
                       f'(scl_inter = {uni.scl_inter}), leaving it uncorrected')
    denoised_volume = uni.like(denoised.astype(np.float32), scl_slope=uni.scl_slope, scl_inter=0.0)
    border_volume = uni.like(border.astype(np.float32), filename=BORDER_ENHANCE_FILENAME)
    return denoised_volume, border_volume


def mp2rage_denoise(uni, inv1, inv2, beta=DEFAULT_BETA, full_scale=MAX12BIT, policy='propagate', n_partitions=1):
    """
    Background denoising of an MP2RAGE UNI image without phase data.

    INV1 is re-estimated from INV2 and UNI (which carries the polarity), and
    recombined with INV2 using the regularized combination. Every voxel is
    computed independently, so splitting the work into ``n_partitions`` flat
    slices does not change the result.

    Args:
        uni (Volume): UNI image, stored values between 0 and full_scale.
        inv1 (Volume): first inversion magnitude.
        inv2 (Volume): second inversion magnitude.
        beta (float): regularization, in units of full_scale (>= 0).
        full_scale (float): full scale of the UNI encoding.
        policy (str): degenerate voxel handling, one of POLICIES.
        n_partitions (int): number of flat slices the voxels are processed in.

    Returns:
        tuple: (denoised Volume, border-enhance Volume, DegeneracyReport)
    """
    _check_policy(policy)
    if not beta >= 0:
        raise ValueError(f'beta must be >= 0, got {beta}')
    grid = check_same_grid(uni, inv1, inv2)

    uni_data = normalize_uni(normalize_volume(uni).flat().astype(np.float64), full_scale)
    inv1_data = normalize_volume(inv1).flat()
    inv2_data = normalize_volume(inv2).flat()

    zero, negative_discriminant = count_degeneracies(uni_data)
    if policy == 'reject' and (zero or negative_discriminant):
        raise NumericDegeneracyError(DegeneracyReport(zero, negative_discriminant, 0))

    beta = beta * full_scale
    logger.info(f'beta: {beta} - min inv2: {inv2_data.min()} - max inv2: {inv2_data.max()}')

    denoised = np.empty(grid.nvox, dtype=np.float64)
    border = np.empty(grid.nvox, dtype=np.float64)
    for part in grid.partition(n_partitions):
        inv1_final = _select_root(inv2_data[part], uni_data[part], clamp=policy == 'clamp')
        denoised[part] = robust_combination(inv1_final, inv2_data[part], beta, full_scale)
        border[part] = border_enhance(inv1_data[part], inv2_data[part])

    report = DegeneracyReport(zero, negative_discriminant, int(np.count_nonzero(~np.isfinite(denoised))))
    if report.degenerate:
        logger.warning(f'numerically degenerate voxels ({policy}): {report}')

    denoised_volume, border_volume = assemble_outputs(uni, denoised, border)
    return denoised_volume, border_volume, report


def output_filenames(filename_uni, filename_output=None):
    """Primary output is filename_output or denoised_<UNI name>, the border map goes next to it."""
    filename_denoised = filename_output or util.add_prefix(str(filename_uni), 'denoised_')
    filename_border = os.path.join(os.path.dirname(filename_denoised), BORDER_ENHANCE_FILENAME)
    return filename_denoised, filename_border


def mp2rage_robust_combination(filename_uni,
                               filename_inv1,
                               filename_inv2,
                               filename_output=None,
                               beta=DEFAULT_BETA,
                               full_scale=MAX12BIT,
                               policy='propagate'):
    """
    File-level wrapper around mp2rage_denoise, following O'Brien et al. (2014),
    "Robust T1-Weighted Structural Brain Imaging and Morphometry at 7T Using
    MP2RAGE", PLoS ONE 9(6): e99676.

    Args:
        filename_uni (str): Path to the uniform T1-image (UNI).
        filename_inv1 (str): Path to the first inversion image (INV1).
        filename_inv2 (str): Path to the second inversion image (INV2).
        filename_output (str, optional): Path to output image, defaults to denoised_<UNI>.
        beta (float, optional): regularization, multiplied by full_scale before use.
        full_scale (float, optional): full scale of the UNI encoding (4095 for Siemens).
        policy (str, optional): degenerate voxel handling, one of POLICIES.

    Returns:
        tuple: (denoised filename, border-enhance filename, DegeneracyReport)
    """
    image_uni = load_volume(filename_uni)
    image_inv1 = load_volume(filename_inv1)
    image_inv2 = load_volume(filename_inv2)

    denoised, border, report = mp2rage_denoise(image_uni, image_inv1, image_inv2,
                                               beta=beta, full_scale=full_scale, policy=policy)

    filename_denoised, filename_border = output_filenames(filename_uni, filename_output)
    save_volume(denoised, filename_denoised)
    save_volume(border, filename_border)
    return filename_denoised, filename_border, report


def run_all_mp2rage_denoise(datapath='data', outdir='data/derivatives/mp2rage_denoised',
                            beta=DEFAULT_BETA, policy='propagate'):
    """Denoise every subject/session in datapath that has UNIT1, INV1 and INV2 images."""
    paths = dataset_paths.get_mp2rage_paths(datapath)

    rows = []
    for subj_id, session in paths[['subj_id', 'session']].drop_duplicates().itertuples(index=False):
        path_uni = dataset_paths.select_single_path(paths, subj_id, session, 'UNIT1')
        path_inv1 = dataset_paths.select_single_path(paths, subj_id, session, 'INV1')
        path_inv2 = dataset_paths.select_single_path(paths, subj_id, session, 'INV2')
        if path_uni is None or path_inv1 is None or path_inv2 is None:
            logger.info(f'sub-{subj_id} {session}: incomplete MP2RAGE set, skipping')
            continue

        target_dir = os.path.join(outdir, f'sub-{subj_id}')
        if session:
            target_dir = os.path.join(target_dir, f'ses-{session}')
        os.makedirs(target_dir, exist_ok=True)
        filename_output = os.path.join(target_dir, 'denoised_' + os.path.basename(path_uni))

        _, _, report = mp2rage_robust_combination(path_uni, path_inv1, path_inv2, filename_output,
                                                  beta=beta, policy=policy)
        rows.append([subj_id, session, filename_output, *report])

    return pd.DataFrame(rows, columns=['subj_id', 'session', 'path', *DegeneracyReport._fields])


def main(argv=None):
    parser = util.ArgumentParser(description="MP2RAGE UNI denoising without phase data (O'Brien et al., 2014)",
                                 allow_abbrev=False)
    parser.add_argument('-INV1', dest='filename_inv1', required=True, help='NIfTI file of the first inversion time')
    parser.add_argument('-INV2', dest='filename_inv2', required=True, help='NIfTI file of the second inversion time')
    parser.add_argument('-UNI', dest='filename_uni', required=True, help='NIfTI file of the MP2RAGE UNI image, expecting values between 0 and full_scale')
    parser.add_argument('-beta', type=float, default=DEFAULT_BETA, help='regularization term')
    parser.add_argument('-output', dest='filename_output', default=None, help='custom output name, default: denoised_<UNI>')
    parser.add_argument('-full_scale', type=float, default=MAX12BIT, help='full scale of the UNI encoding')
    parser.add_argument('-policy', choices=POLICIES, default='propagate', help='handling of voxels with uni == 0 or |uni| > 0.5')
    args = parser.parse_args(argv)
    if not args.beta >= 0:
        parser.error('-beta must be >= 0')

    logging.basicConfig(level=logging.INFO, format='%(levelname)s %(name)s: %(message)s')
    try:
        mp2rage_robust_combination(args.filename_uni,
                                   args.filename_inv1,
                                   args.filename_inv2,
                                   args.filename_output,
                                   beta=args.beta,
                                   full_scale=args.full_scale,
                                   policy=args.policy)
    except VolumeError as e:
        logger.error(f'** {e}')
        return EXIT_READ_FAILURE
    except NumericDegeneracyError as e:
        logger.error(f'** {e}')
        return EXIT_DEGENERATE
    logger.info('Finished.')
    return EXIT_OK


if __name__ == '__main__':
    sys.exit(main())
