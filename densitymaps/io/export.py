"""
Export of density maps.

Raw rasters are written to HDF5 (one gzip-compressed float32 dataset plus
attributes), rendered maps to RGBA images through Pillow, and metadata to
JSON.

HDF5 layout:
    /density            float32 (height, width, channels), gzip
    attrs['id']         density map id
    attrs['channel_names'], attrs['downsample'], attrs['pixel_size'],
    attrs['image_width'], attrs['image_height'], attrs['plane_z'],
    attrs['plane_t'], attrs['failed_tiles']
    attrs['spec']       DensityMapSpec JSON ('' if unknown)

Usage:
    from densitymaps.io.export import write_density_map_hdf5, read_density_map_hdf5

    write_density_map_hdf5(density_map, "map.h5")
    loaded = read_density_map_hdf5("map.h5")
"""

from pathlib import Path
from typing import Optional, Union

import h5py
import numpy as np
from PIL import Image

from densitymaps.density.raster import DensityRaster
from densitymaps.density.spec import DensityMapSpec
from densitymaps.display.render import ColorRenderer, DisplaySettings
from densitymaps.objects.model import ImagePlane
from densitymaps.utils.json_utils import atomic_json_dump
from densitymaps.utils.logging import get_logger

logger = get_logger(__name__)

DATASET_NAME = "density"
HDF5_COMPRESSION_KWARGS = {'compression': 'gzip', 'compression_opts': 4}

PathLike = Union[str, Path]


def write_density_map_hdf5(raster: DensityRaster, path: PathLike) -> Path:
    """
    Write the raw raster values and metadata to an HDF5 file.

    Returns:
        Path that was written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with h5py.File(path, 'w') as f:
        dset = f.create_dataset(DATASET_NAME, data=raster.data, **HDF5_COMPRESSION_KWARGS)
        dset.attrs['id'] = raster.id
        dset.attrs['channel_names'] = np.array(raster.channel_names, dtype=h5py.string_dtype())
        dset.attrs['downsample'] = raster.downsample
        dset.attrs['pixel_size'] = raster.pixel_size
        dset.attrs['image_width'] = raster.image_width
        dset.attrs['image_height'] = raster.image_height
        dset.attrs['plane_z'] = raster.plane.z
        dset.attrs['plane_t'] = raster.plane.t
        dset.attrs['failed_tiles'] = raster.failed_tiles
        dset.attrs['spec'] = "" if raster.spec is None else raster.spec.to_json()

    logger.info("Wrote %r to %s", raster, path)
    return path


def _as_str(value) -> str:
    return value.decode('utf-8') if isinstance(value, bytes) else str(value)


def read_density_map_hdf5(path: PathLike) -> DensityRaster:
    """
    Load a raster written by write_density_map_hdf5.

    The loaded raster keeps its original id, so cached min/max values
    computed before export stay valid for it.

    Raises:
        FileNotFoundError: If the file does not exist
        KeyError: If the file has no density dataset
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Density map file not found: {path}")

    with h5py.File(path, 'r') as f:
        if DATASET_NAME not in f:
            raise KeyError(f"{path} has no '{DATASET_NAME}' dataset")
        dset = f[DATASET_NAME]
        data = dset[:]
        attrs = dict(dset.attrs)

    spec_json = _as_str(attrs.get('spec', ""))
    raster = DensityRaster(
        data=data,
        channel_names=tuple(_as_str(name) for name in attrs['channel_names']),
        downsample=float(attrs['downsample']),
        pixel_size=float(attrs['pixel_size']),
        image_width=int(attrs['image_width']),
        image_height=int(attrs['image_height']),
        spec=DensityMapSpec.from_json(spec_json) if spec_json else None,
        plane=ImagePlane(z=int(attrs.get('plane_z', 0)), t=int(attrs.get('plane_t', 0))),
        failed_tiles=int(attrs.get('failed_tiles', 0)),
        id=_as_str(attrs['id']),
    )
    logger.debug("Loaded %r from %s", raster, path)
    return raster


def write_rendered_image(
    raster: DensityRaster,
    path: PathLike,
    settings: Optional[DisplaySettings] = None,
    renderer: Optional[ColorRenderer] = None,
) -> Path:
    """
    Render a raster to an RGBA image (format from the file suffix, e.g. .png, .tif).

    Returns:
        Path that was written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    settings = settings or DisplaySettings(auto_display_range=True, auto_alpha_range=True)
    renderer = renderer or ColorRenderer()

    rgba = renderer.render_raster(raster, settings)
    Image.fromarray(rgba).save(path)
    logger.info("Wrote rendered %s (%dx%d) to %s",
                raster.channel_name(settings.channel), raster.width, raster.height, path)
    return path


def write_metadata_json(raster: DensityRaster, path: PathLike) -> Path:
    """Write raster metadata (no pixel data) as JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_json_dump(raster.metadata(), path, indent=2)
    return path
