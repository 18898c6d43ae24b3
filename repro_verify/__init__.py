"""FreeBSD image reproducibility verifier.

This package rebuilds the source revision recorded in a FreeBSD disk image
and compares content manifests of the original and rebuilt images to decide
whether the image is reproducible bit-for-bit.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
