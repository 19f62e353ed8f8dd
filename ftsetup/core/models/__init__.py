"""
Domain models: Pydantic types for provisioning.

All models are re-exported here for convenient access:

    from ftsetup.core.models import ProvisionSettings, Command, Receipt, StepResult
"""

from ftsetup.core.models.action import Command, Receipt
from ftsetup.core.models.packages import AptGroup, PackageCatalog, PipGroup
from ftsetup.core.models.settings import DirectorySpec, ProvisionSettings
from ftsetup.core.models.step import StepResult
from ftsetup.core.models.template import ARTIFACT_MODES, ArtifactSpec

__all__ = [
    "ARTIFACT_MODES",
    "AptGroup",
    "ArtifactSpec",
    "Command",
    "DirectorySpec",
    "PackageCatalog",
    "PipGroup",
    "ProvisionSettings",
    "Receipt",
    "StepResult",
]
