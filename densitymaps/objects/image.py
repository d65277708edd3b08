"""Image metadata paired with its object hierarchy."""

from dataclasses import dataclass, field
from typing import Optional, Tuple

from densitymaps.errors import DataUnavailable
from densitymaps.objects.index import ObjectHierarchy
from densitymaps.objects.model import DEFAULT_PLANE, ImagePlane


@dataclass
class ImageData:
    """
    Full-resolution image dimensions, pixel calibration and objects.

    Attributes:
        width: Image width in pixels
        height: Image height in pixels
        pixel_width: Calibrated units (e.g. um) per pixel along x
        pixel_height: Calibrated units per pixel along y
        hierarchy: Objects detected or annotated on the image
        name: Optional image name, used in logs and exports
        plane: Plane density maps are built for
    """
    width: int
    height: int
    pixel_width: float = 1.0
    pixel_height: float = 1.0
    hierarchy: ObjectHierarchy = field(default_factory=ObjectHierarchy)
    name: Optional[str] = None
    plane: ImagePlane = DEFAULT_PLANE

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Image size must be positive, got {self.width}x{self.height}")
        if self.pixel_width <= 0 or self.pixel_height <= 0:
            raise ValueError(
                f"Pixel size must be positive, got {self.pixel_width}x{self.pixel_height}"
            )

    @property
    def averaged_pixel_size(self) -> float:
        return (self.pixel_width + self.pixel_height) / 2.0

    @property
    def bounds(self) -> Tuple[int, int, int, int]:
        """(x, y, width, height) of the full image."""
        return (0, 0, self.width, self.height)

    @property
    def closed(self) -> bool:
        return self.hierarchy.closed

    def check_available(self) -> None:
        if self.closed:
            label = f"Image '{self.name}'" if self.name else "Image"
            raise DataUnavailable(f"{label} has been closed")

    def close(self) -> None:
        self.hierarchy.close()
