import logging

import nibabel as nib
import numpy as np
from nibabel.filebasedimages import ImageFileError
from nibabel.openers import ImageOpener
from nibabel.volumeutils import array_to_file

logger = logging.getLogger(__name__)

# stored voxel encodings the ingest step knows how to turn into float32
SUPPORTED_ENCODINGS = (np.dtype(np.int16),
                       np.dtype(np.uint16),
                       np.dtype(np.int32),
                       np.dtype(np.float32))


class VolumeError(Exception):
    pass


class UnsupportedEncoding(VolumeError):
    def __init__(self, dtype, filename=None):
        self.dtype = np.dtype(dtype)
        self.filename = filename
        where = f' in {filename}' if filename else ''
        super().__init__(f'unsupported voxel encoding {self.dtype}{where}, '
                         f'expected one of: {", ".join(str(d) for d in SUPPORTED_ENCODINGS)}')


class GridMismatch(VolumeError):
    pass


class VolumeReadError(VolumeError):
    def __init__(self, filename, reason):
        self.filename = str(filename)
        super().__init__(f"failed to read NIfTI from '{filename}': {reason}")


class GridIndex:
    """
    Maps (x, y, z, t) voxel coordinates to offsets into a flat buffer and back.

    The flat order is the NIfTI storage order (x varies fastest, t slowest), which
    is what ``np.ravel(order='F')`` produces for an (nx, ny, nz, nt) array. Bounds are
    checked with ``assert`` only, so they are dropped when running ``python -O``.
    """

    def __init__(self, dims):
        dims = tuple(int(d) for d in dims) + (1,) * (4 - len(dims))
        if len(dims) != 4 or min(dims) < 1:
            raise ValueError(f'invalid grid dimensions: {dims}')
        self.dims = dims
        self.nx, self.ny, self.nz, self.nt = dims
        self.nxy = self.nx * self.ny
        self.nxyz = self.nxy * self.nz
        self.nvox = self.nxyz * self.nt

    def offset(self, x, y, z=0, t=0):
        assert 0 <= x < self.nx and 0 <= y < self.ny and 0 <= z < self.nz and 0 <= t < self.nt, \
            f'voxel ({x}, {y}, {z}, {t}) outside grid {self.dims}'
        return x + y * self.nx + z * self.nxy + t * self.nxyz

    def coords(self, offset):
        assert 0 <= offset < self.nvox, f'offset {offset} outside grid of {self.nvox} voxels'
        t, rest = divmod(offset, self.nxyz)
        z, rest = divmod(rest, self.nxy)
        y, x = divmod(rest, self.nx)
        return x, y, z, t

    def partition(self, n):
        """Split the flat range into ``n`` contiguous, disjoint slices covering every voxel once."""
        if n < 1:
            raise ValueError(f'number of partitions must be >= 1, got {n}')
        bounds = np.linspace(0, self.nvox, min(n, self.nvox) + 1).astype(int)
        return [slice(start, stop) for start, stop in zip(bounds[:-1], bounds[1:])]

    def __eq__(self, other):
        return isinstance(other, GridIndex) and self.dims == other.dims

    def __repr__(self):
        return f'GridIndex{self.dims}'


class Volume:
    """
    A rectilinear grid of samples plus the NIfTI intensity scaling it came with.

    ``data`` holds the stored (unscaled) samples; ``scl_slope``/``scl_inter`` are kept
    alongside instead of being applied.
    """

    def __init__(self, data, affine=None, header=None, scl_slope=1.0, scl_inter=0.0, filename=None):
        data = np.asarray(data)
        if data.ndim > 4:
            raise ValueError(f'volumes have at most 4 dimensions, got shape {data.shape}')
        self.data = data
        self.affine = np.eye(4) if affine is None else np.asarray(affine)
        self.header = header
        self.scl_slope = float(scl_slope)
        self.scl_inter = float(scl_inter)
        self.filename = filename
        self.grid = GridIndex(data.shape)

    @property
    def dims(self):
        return self.grid.dims

    @property
    def nvox(self):
        return self.grid.nvox

    @property
    def dtype(self):
        return self.data.dtype

    def flat(self):
        """1-D view (or copy, for non-contiguous buffers) in NIfTI storage order."""
        return self.data.reshape(-1, order='F')

    def voxel(self, x, y, z=0, t=0):
        return self.flat()[self.grid.offset(x, y, z, t)]

    def like(self, data, scl_slope=1.0, scl_inter=0.0, filename=None):
        """New volume on the same grid and affine, owning ``data``."""
        data = np.asarray(data)
        if data.shape != self.data.shape:
            data = data.reshape(self.data.shape, order='F')
        return Volume(data, affine=self.affine.copy(),
                      header=None if self.header is None else self.header.copy(),
                      scl_slope=scl_slope, scl_inter=scl_inter, filename=filename)

    @classmethod
    def from_image(cls, image, filename=None):
        if nib.is_proxy(image.dataobj):
            data = np.asanyarray(image.dataobj.get_unscaled())
        else:
            data = np.asanyarray(image.dataobj)
        slope, inter = image.header.get_slope_inter()
        # NIfTI: slope 0 / unset means "no scaling"
        if slope is None or not np.isfinite(slope) or slope == 0:
            slope = 1.0
        if inter is None or not np.isfinite(inter):
            inter = 0.0
        return cls(data, affine=image.affine, header=image.header.copy(),
                   scl_slope=slope, scl_inter=inter,
                   filename=filename or image.get_filename())

    def to_image(self):
        image = nib.Nifti1Image(self.data, self.affine, self.header)
        image.set_data_dtype(self.data.dtype)
        # set after construction, nibabel resets header scaling in the constructor
        image.header.set_slope_inter(self.scl_slope, self.scl_inter)
        return image

    def describe(self):
        data = self.data
        return (f'{self.filename or "<memory>"}: dims {self.dims}, {self.dtype}, '
                f'min {np.nanmin(data) if data.size else np.nan}, '
                f'max {np.nanmax(data) if data.size else np.nan}, '
                f'scale ({self.scl_slope}, {self.scl_inter})')

    def __repr__(self):
        return f'Volume(dims={self.dims}, dtype={self.dtype}, filename={self.filename!r})'


def load_volume(filename):
    try:
        image = nib.load(filename)
        volume = Volume.from_image(image, filename=str(filename))
    except (OSError, EOFError, ImageFileError) as e:
        raise VolumeReadError(filename, e) from e
    logger.info(volume.describe())
    return volume


def save_volume(volume, filename):
    """
    Write ``volume`` as single-file NIfTI (.nii / .nii.gz), keeping its slope and intercept.

    ``nib.save`` recomputes the header scaling from the data, so header and samples are
    written separately here.
    """
    filename = str(filename)
    if not filename.lower().endswith(('.nii', '.nii.gz')):
        raise ValueError(f'{filename} is not a single-file NIfTI name (.nii or .nii.gz)')
    image = volume.to_image()
    image.update_header()
    header = image.header
    header.set_slope_inter(volume.scl_slope, volume.scl_inter)
    # samples start right after the header and its extensions
    header['vox_offset'] = header.single_vox_offset + header.extensions.get_sizeondisk()
    with ImageOpener(filename, 'wb') as fileobj:
        header.write_to(fileobj)
        array_to_file(volume.data, fileobj, header.get_data_dtype(),
                      offset=header.get_data_offset(), order='F')
    logger.info(f'written: {filename}')


def normalize_volume(volume):
    """
    Convert the stored samples of ``volume`` into float32, voxel for voxel.

    Slope and intercept are carried over but not applied. Encodings outside
    ``SUPPORTED_ENCODINGS`` raise ``UnsupportedEncoding``.

    Args:
        volume (Volume): raw volume as read from disk.

    Returns:
        Volume: new float32 volume on the same grid.
    """
    if volume.dtype not in SUPPORTED_ENCODINGS:
        raise UnsupportedEncoding(volume.dtype, volume.filename)
    data = np.array(volume.data, dtype=np.float32, copy=True)
    return Volume(data, affine=volume.affine.copy(),
                  header=None if volume.header is None else volume.header.copy(),
                  scl_slope=volume.scl_slope, scl_inter=volume.scl_inter,
                  filename=volume.filename)


def check_same_grid(*volumes):
    dims = [v.dims for v in volumes]
    if len(set(dims)) > 1:
        names = ', '.join(f'{v.filename or "<memory>"} {v.dims}' for v in volumes)
        raise GridMismatch(f'input volumes do not share the same grid: {names}')
    return volumes[0].grid
