"""Build launch module.

This module handles:
- Environment layering and build configuration assembly
- Container runtime discovery
- Launcher provisioning and step execution (Docker-compatible runtimes)
- Phase orchestration with wrapped errors
"""

from sd_local.launch.build_config import BuildConfiguration, assemble
from sd_local.launch.orchestrator import LaunchError, Launcher, new_launcher

__all__ = ["BuildConfiguration", "LaunchError", "Launcher", "assemble", "new_launcher"]
