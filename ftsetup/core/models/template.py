"""
Artifact model: a file materialized from a packaged template.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict

ArtifactClass = Literal["secret", "script", "general", "system", "system-script"]

# sensitivity class -> (mode, owned by root)
ARTIFACT_MODES: dict[str, tuple[int, bool]] = {
    "secret": (0o600, False),
    "script": (0o755, False),
    "general": (0o644, False),
    "system": (0o644, True),
    "system-script": (0o755, True),
}


class ArtifactSpec(BaseModel):
    """A file produced from a template.

    Attributes:
        name:        Identifier used in logs and verification.
        template:    Resource path under ``ftsetup/templates``.
        dest:        Absolute destination path.
        sensitivity: Drives owner and mode (see ``ARTIFACT_MODES``).
        kind:        ``json`` artifacts are validated (and patched) as JSON.
        group:       The step that writes it (config, strategy, scripts, ...).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    template: str
    dest: Path
    sensitivity: ArtifactClass = "general"
    kind: Literal["text", "json"] = "text"
    group: str

    @property
    def mode(self) -> int:
        return ARTIFACT_MODES[self.sensitivity][0]

    @property
    def root_owned(self) -> bool:
        return ARTIFACT_MODES[self.sensitivity][1]

    @property
    def executable(self) -> bool:
        return bool(self.mode & 0o100)
