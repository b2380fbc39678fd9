import logging
import sys

import numpy as np
import scipy.ndimage

import util
from volume import VolumeError, load_volume, normalize_volume, save_volume

logger = logging.getLogger(__name__)

# correlation weights for (f[i-1] - f[i+1]) / 2
CENTRAL_DIFFERENCE = [0.5, 0.0, -0.5]


def gradient_magnitude(data):
    """
    Gradient magnitude from central differences along the first three axes
    (Gulban et al., 2018, PLoS ONE 13, e0198335, Figure 1).

    Derivatives are 0 on the first and last voxel of their axis; a 4th axis
    is treated as independent time points.
    """
    data = np.asarray(data, dtype=np.float32)
    squared = np.zeros_like(data)
    for axis in range(min(data.ndim, 3)):
        gradient = scipy.ndimage.correlate1d(data, CENTRAL_DIFFERENCE, axis=axis, mode='nearest')
        edges = [slice(None)] * data.ndim
        edges[axis] = [0, -1]
        gradient[tuple(edges)] = 0
        squared += np.square(gradient)
    return np.sqrt(squared)


def gramag(filename_input, filename_output=None):
    """Write the gradient magnitude of filename_input to <output basename>_gramag.nii[.gz]."""
    volume = load_volume(filename_input)
    data = normalize_volume(volume).data

    logger.info('Computing gradients...')
    magnitude = gradient_magnitude(data)

    # gradients of stored values scale with |slope|, the intercept drops out
    output = volume.like(magnitude, scl_slope=abs(volume.scl_slope), scl_inter=0.0)
    filename_gramag = util.add_suffix(str(filename_output or filename_input), '_gramag')
    save_volume(output, filename_gramag)
    return filename_gramag


def main(argv=None):
    parser = util.ArgumentParser(description='Compute gradient magnitude image.', allow_abbrev=False)
    parser.add_argument('-input', dest='filename_input', required=True, help='NIfTI image with values that will be used to compute gradients')
    parser.add_argument('-output', dest='filename_output', default=None, help='output basename, default: input name')
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format='%(levelname)s %(name)s: %(message)s')
    try:
        gramag(args.filename_input, args.filename_output)
    except VolumeError as e:
        logger.error(f'** {e}')
        return 2
    logger.info('Finished.')
    return 0


if __name__ == '__main__':
    sys.exit(main())
