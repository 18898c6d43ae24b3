"""Content manifests and their comparison.

This module handles:
- Hashing directory trees into sorted path|digest manifests
- Diffing two manifests into a reproducibility verdict
"""

from repro_verify.manifest.compare import VerificationReport, compare
from repro_verify.manifest.hasher import Manifest, ManifestEntry, hash_tree

__all__ = ["Manifest", "ManifestEntry", "VerificationReport", "compare", "hash_tree"]
