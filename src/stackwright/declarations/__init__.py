"""Declaration loading: models, expressions, profiles."""

from stackwright.declarations.loader import load_declarations, parse_declarations
from stackwright.declarations.models import (
    Declarations,
    LifecyclePolicy,
    ModuleDeclaration,
    ParameterSpec,
    Profile,
    ResourceKindSchema,
    ResourceTemplate,
)
from stackwright.declarations.profiles import load_profile
from stackwright.declarations.references import ABSENT, InstanceAddress

__all__ = [
    "ABSENT",
    "Declarations",
    "InstanceAddress",
    "LifecyclePolicy",
    "ModuleDeclaration",
    "ParameterSpec",
    "Profile",
    "ResourceKindSchema",
    "ResourceTemplate",
    "load_declarations",
    "load_profile",
    "parse_declarations",
]
