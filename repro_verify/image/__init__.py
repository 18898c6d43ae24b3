"""Image acquisition, mounting and identity extraction.

This package handles:
- Obtaining raw images from local paths or HTTP(S) URLs
- Attaching images as memory disks and mounting UFS or ZFS roots
- Recovering the build identity from the image kernel
"""

from repro_verify.image.fetch import acquire
from repro_verify.image.metadata import extract
from repro_verify.image.mount import ImageMounter
from repro_verify.image.source import (
    CloudImage,
    ImageSource,
    LocalImage,
    RemoteImage,
    SourceType,
    make_source,
)

__all__ = [
    "CloudImage",
    "ImageMounter",
    "ImageSource",
    "LocalImage",
    "RemoteImage",
    "SourceType",
    "acquire",
    "extract",
    "make_source",
]
