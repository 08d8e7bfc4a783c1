class FlyerError(Exception):
    """Base class for errors raised while generating a flyer."""


class UpstreamError(FlyerError):
    """The layout model or the image model did not return a usable result."""


class SegmentationError(FlyerError):
    """Background removal failed for an image."""


class ValidationError(FlyerError):
    """Required input was missing or malformed."""
