"""Build orchestration module.

This module handles:
- Cloning the FreeBSD source at a branch and commit
- Running buildworld, buildkernel and vm-image
"""

from repro_verify.builds.runner import BuildResult, BuildStage, build

__all__ = ["BuildResult", "BuildStage", "build"]
