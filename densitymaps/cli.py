"""
Command-line interface for density maps.

Subcommands:
    build     Build a density map from GeoJSON objects and export it
    hotspots  Find hotspots in a density map and write them as GeoJSON
    contours  Trace threshold contours and write them as GeoJSON

Density classes are given as ``NAME=FILTER`` or just ``FILTER``, where FILTER
uses the class filter syntax: ``Tumor`` (exact), ``~Tumor`` (base class),
``+`` / ``+Tumor`` (any positive), ``-`` (unclassified), ``*`` (any).
"""

import argparse
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from densitymaps import __version__
from densitymaps.density.builder import DensityMapBuilder
from densitymaps.density.contours import trace_contours
from densitymaps.density.hotspots import HotspotFinder
from densitymaps.density.raster import DensityRaster
from densitymaps.density.selectors import ClassFilter, ObjectSelector
from densitymaps.density.spec import (
    COUNTS_CHANNEL,
    AreaRoiMode,
    DensityMapSpec,
    KernelShape,
    Normalization,
    spec_from_config,
)
from densitymaps.display.render import ColorRenderer, DisplaySettings
from densitymaps.errors import DensityMapError
from densitymaps.io.export import (
    read_density_map_hdf5,
    write_density_map_hdf5,
    write_metadata_json,
    write_rendered_image,
)
from densitymaps.io.geojson import load_hierarchy, write_geojson
from densitymaps.objects.image import ImageData
from densitymaps.objects.index import ObjectHierarchy
from densitymaps.objects.model import ClassifiedObject, PathClass
from densitymaps.utils.config import get_config_value, load_config
from densitymaps.utils.logging import get_logger, log_parameters, setup_logging

logger = get_logger(__name__)


def parse_density_class(text: str, all_objects: ObjectSelector) -> Tuple[str, ObjectSelector]:
    """
    Parse a ``NAME=FILTER`` (or ``FILTER``) density class argument.

    The selector uses the object type of ``all_objects``.

    Returns:
        (channel name, ObjectSelector)
    """
    name, sep, filter_text = text.partition("=")
    if not sep:
        name, filter_text = "", text
    class_filter = ClassFilter.from_string(filter_text)
    name = name.strip() or class_filter.describe()
    return name, ObjectSelector(object_type=all_objects.object_type, class_filter=class_filter)


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--config', type=str, default=None,
                        help='JSON config file (merged over defaults)')
    parser.add_argument('--log-level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (default: INFO)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Also write the log to this file')


def _add_build_args(parser: argparse.ArgumentParser, require_objects: bool = True) -> None:
    parser.add_argument('--objects', type=str, required=require_objects,
                        help='GeoJSON (or .geojson.gz) file with detections/annotations')
    parser.add_argument('--width', type=int, default=None,
                        help='Image width in pixels (required when building)')
    parser.add_argument('--height', type=int, default=None,
                        help='Image height in pixels (required when building)')
    parser.add_argument('--pixel-width', type=float, default=1.0,
                        help='Calibrated width of an image pixel (default: 1)')
    parser.add_argument('--pixel-height', type=float, default=1.0,
                        help='Calibrated height of an image pixel (default: 1)')
    parser.add_argument('--radius', type=float, default=None,
                        help='Kernel radius in calibrated units (required when building)')
    parser.add_argument('--density', type=str, action='append', default=[],
                        metavar='CLASS',
                        help='Density class, NAME=FILTER or FILTER (repeatable)')
    parser.add_argument('--all', dest='all_objects', type=str, default='detections',
                        help='Selector for counted objects, e.g. "cells" or "detections:~Tumor"')
    parser.add_argument('--normalization', type=str, default=Normalization.RAW.value,
                        choices=[n.value for n in Normalization])
    parser.add_argument('--kernel', type=str, default=None,
                        choices=[k.value for k in KernelShape],
                        help='Kernel shape (default: box, gaussian for gaussian_weighted)')
    parser.add_argument('--pixel-size', type=float, default=None,
                        help='Output pixel size (calibrated); default is automatic')
    parser.add_argument('--area-roi-mode', type=str, default=None,
                        choices=[m.value for m in AreaRoiMode])
    parser.add_argument('--workers', type=int, default=None,
                        help='Worker threads (default from config)')


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='densitymaps',
        description='Density maps of classified objects',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Percentage of positive tumor cells within 50 um
  densitymaps build --objects cells.geojson --width 40000 --height 30000 \\
      --pixel-width 0.25 --pixel-height 0.25 --radius 50 \\
      --all "cells:~Tumor" --density "Positive=+Tumor" \\
      --normalization percent --output tumor_positive.h5 --render tumor_positive.png

  # Three highest-density hotspots of an existing map
  densitymaps hotspots --objects cells.geojson --map tumor_positive.h5 \\
      --channel Positive -n 3 --output hotspots.geojson
''',
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', required=True)

    build = subparsers.add_parser('build', help='Build and export a density map')
    _add_build_args(build)
    _add_common_args(build)
    build.add_argument('--output', type=str, required=True, help='Output HDF5 file')
    build.add_argument('--render', type=str, default=None,
                       help='Also write a rendered RGBA image (.png/.tif)')
    build.add_argument('--render-channel', type=str, default=None,
                       help='Channel to render (default: first)')
    build.add_argument('--metadata', type=str, default=None,
                       help='Also write metadata JSON')

    hotspots = subparsers.add_parser('hotspots', help='Find density hotspots')
    _add_build_args(hotspots, require_objects=False)
    _add_common_args(hotspots)
    hotspots.add_argument('--map', type=str, default=None,
                          help='Existing density map HDF5 (instead of building one)')
    hotspots.add_argument('--channel', type=str, default=None,
                          help='Channel name (default: first)')
    hotspots.add_argument('-n', '--n-hotspots', type=int, default=None,
                          help='Maximum number of hotspots')
    hotspots.add_argument('--hotspot-radius', type=float, default=None,
                          help='Hotspot radius (default: kernel radius)')
    hotspots.add_argument('--min-density', type=float, default=None)
    hotspots.add_argument('--min-count', type=float, default=None)
    hotspots.add_argument('--allow-overlap', action='store_true', default=None)
    hotspots.add_argument('--peaks-only', action='store_true', default=None)
    hotspots.add_argument('--within-parent', action='store_true',
                          help='Hotspot circles must fit inside their parent')
    hotspots.add_argument('--parents', type=str, default=None,
                          help='Classification of annotations to search within')
    hotspots.add_argument('--output', type=str, required=True, help='Output GeoJSON file')

    contours = subparsers.add_parser('contours', help='Trace threshold contours')
    _add_build_args(contours, require_objects=False)
    _add_common_args(contours)
    contours.add_argument('--map', type=str, default=None,
                          help='Existing density map HDF5 (instead of building one)')
    contours.add_argument('--channel', type=str, default=None,
                          help='Channel name (default: first)')
    contours.add_argument('--threshold', type=float, required=True)
    contours.add_argument('--min-count', type=float, default=None,
                          help='Also require the counts channel >= this value')
    contours.add_argument('--split', action='store_true', default=None,
                          help='One annotation per connected region')
    contours.add_argument('--simplify', type=float, default=None,
                          help='RDP simplification tolerance in pixels')
    contours.add_argument('--parents', type=str, default=None,
                          help='Classification of annotations to trace within')
    contours.add_argument('--output', type=str, required=True, help='Output GeoJSON file')

    return parser


def spec_from_args(args: argparse.Namespace, config: Dict) -> DensityMapSpec:
    """
    Build a DensityMapSpec from parsed build arguments.

    Raises:
        InvalidSpec: Invalid or inconsistent values
    """
    if args.radius is None:
        raise ValueError("--radius is required to build a density map")
    all_objects = ObjectSelector.from_string(args.all_objects)
    density_classes = dict(parse_density_class(text, all_objects) for text in args.density)
    kwargs = {}
    if args.area_roi_mode is not None:
        kwargs["area_roi_mode"] = args.area_roi_mode
    return spec_from_config(
        config.get("density", {}),
        args.radius,
        density_classes=density_classes,
        all_objects=all_objects,
        kernel=args.kernel,
        pixel_size=args.pixel_size,
        normalization=args.normalization,
        **kwargs,
    )


def _image_from_args(args: argparse.Namespace, hierarchy: ObjectHierarchy) -> ImageData:
    if args.width is None or args.height is None:
        raise ValueError("--width and --height are required to build a density map")
    return ImageData(
        width=args.width,
        height=args.height,
        pixel_width=args.pixel_width,
        pixel_height=args.pixel_height,
        hierarchy=hierarchy,
        name=Path(args.objects).stem if args.objects else "",
    )


def _load_hierarchy(args: argparse.Namespace) -> ObjectHierarchy:
    if args.objects:
        return load_hierarchy(args.objects)
    return ObjectHierarchy()


def _density_map(args: argparse.Namespace, config: Dict, hierarchy: ObjectHierarchy) -> DensityRaster:
    if getattr(args, 'map', None):
        return read_density_map_hdf5(args.map)

    spec = spec_from_args(args, config)
    image_data = _image_from_args(args, hierarchy)
    log_parameters(logger, {
        "image": f"{image_data.width}x{image_data.height}",
        "pixel size": f"{image_data.pixel_width:g} x {image_data.pixel_height:g}",
        "spec": spec.describe(),
    }, title="Density map")
    overrides = {"show_progress": True}
    if args.workers is not None:
        overrides["num_workers"] = args.workers
    builder = DensityMapBuilder.from_config(config, **overrides)
    return builder.build(image_data, spec)


def _parents(hierarchy: ObjectHierarchy, class_name: Optional[str]) -> List[ClassifiedObject]:
    if not class_name:
        return []
    path_class = PathClass.from_string(class_name)
    parents = hierarchy.get_objects(
        lambda o: o.is_annotation and o.classification == path_class
    )
    if not parents:
        logger.warning("No '%s' annotations found; using the whole image", class_name)
    return parents


def _channel(channel: Optional[str]) -> Union[int, str]:
    return 0 if channel is None else channel


def cmd_build(args: argparse.Namespace, config: Dict) -> int:
    hierarchy = _load_hierarchy(args)
    density_map = _density_map(args, config, hierarchy)
    write_density_map_hdf5(density_map, args.output)

    if args.metadata:
        write_metadata_json(density_map, args.metadata)

    if args.render:
        settings = DisplaySettings.from_config(
            config.get("display", {}),
            channel=_channel(args.render_channel),
            auto_display_range=True,
            auto_alpha_range=True,
        )
        write_rendered_image(density_map, args.render, settings, ColorRenderer())
    return 0


def cmd_hotspots(args: argparse.Namespace, config: Dict) -> int:
    hierarchy = _load_hierarchy(args)
    density_map = _density_map(args, config, hierarchy)

    overrides = {
        "n": args.n_hotspots,
        "radius": args.hotspot_radius,
        "min_density": args.min_density,
        "min_count": args.min_count,
        "allow_overlap": args.allow_overlap,
        "peaks_only": args.peaks_only,
    }
    finder = HotspotFinder.from_config(
        config,
        constrain_within_parent=args.within_parent,
        **{k: v for k, v in overrides.items() if v is not None},
    )
    hotspots = finder.find(
        hierarchy,
        density_map,
        _channel(args.channel),
        parents=_parents(hierarchy, args.parents),
    )
    for i, hotspot in enumerate(hotspots, 1):
        logger.info("  %d. (%.1f, %.1f) value=%.4g", i, hotspot.x, hotspot.y, hotspot.value)
    write_geojson([h.annotation for h in hotspots], args.output)
    return 0


def cmd_contours(args: argparse.Namespace, config: Dict) -> int:
    hierarchy = _load_hierarchy(args)
    density_map = _density_map(args, config, hierarchy)

    extra_thresholds = None
    if args.min_count is not None:
        if density_map.counts_band < 0:
            raise ValueError(f"--min-count needs a '{COUNTS_CHANNEL}' channel in the map")
        extra_thresholds = {COUNTS_CHANNEL: args.min_count}

    split = args.split if args.split is not None else get_config_value(config, "contours", "split")
    epsilon = (args.simplify if args.simplify is not None
               else get_config_value(config, "contours", "simplify_epsilon"))
    annotations = trace_contours(
        hierarchy,
        density_map,
        _channel(args.channel),
        args.threshold,
        parents=_parents(hierarchy, args.parents),
        split=split,
        delete_existing=get_config_value(config, "contours", "delete_existing"),
        extra_thresholds=extra_thresholds,
        simplify_epsilon=epsilon,
    )
    write_geojson(annotations, args.output)
    return 0


COMMANDS = {
    'build': cmd_build,
    'hotspots': cmd_hotspots,
    'contours': cmd_contours,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(level=args.log_level, log_file=args.log_file)

    try:
        config = load_config(args.config)
        return COMMANDS[args.command](args, config)
    except (DensityMapError, ValueError, KeyError, FileNotFoundError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1


if __name__ == '__main__':
    sys.exit(main())
