"""
Error taxonomy for density map building and analysis.

- InvalidSpec: rejected before any tiling work begins
- DataUnavailable: image or object hierarchy became unreachable mid-build
- Cancelled: cooperative cancellation observed; not a user-visible error
- RenderingFailure: color model could not be built; renderers recover locally
"""


class DensityMapError(Exception):
    """Base class for all density map errors."""


class InvalidSpec(DensityMapError, ValueError):
    """A density map specification that cannot be built (e.g. radius <= 0)."""


class DataUnavailable(DensityMapError):
    """The backing image or object hierarchy can no longer be queried."""


class Cancelled(DensityMapError):
    """A background task observed its cancellation flag."""


class RenderingFailure(DensityMapError):
    """A color model could not be created for the requested display settings."""
