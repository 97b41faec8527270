"""reprobuild - Reproducible multi-target build orchestration.

This package drives a native application build across several OS/architecture
targets, manages the dependency and compiler caches, and verifies that
independent builds of the same commit produce byte-identical archives.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
