"""sd-local - Run Screwdriver.cd builds on your local machine.

This package reconstructs a job's execution environment from its remote
definition and runs it through a local container runtime.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
