"""Target registry module.

This module handles:
- Target schema validation
- Loading the registry from YAML or the built-in catalog
- Resolving target selections
"""

from reprobuild.targets.registry import RegistryError, TargetRegistry, load_registry
from reprobuild.targets.schema import TargetSchema

__all__ = ["RegistryError", "TargetRegistry", "TargetSchema", "load_registry"]
