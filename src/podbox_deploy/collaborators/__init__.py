"""
External collaborators used by the deployment components.

Each collaborator is an interface with one production implementation:
- ServiceController / SystemdServiceController (systemctl)
- DatabaseTool / PostgresTool (pg_dump, psql)
- HttpProbe / HttpxProbe (httpx)
- Filesystem (shutil/os based tree operations)

Tests substitute in-memory fakes for the first three and run the
Filesystem against a temporary directory.
"""

from podbox_deploy.collaborators.database import DatabaseTool, PostgresTool
from podbox_deploy.collaborators.filesystem import Filesystem
from podbox_deploy.collaborators.probe import HttpProbe, HttpxProbe
from podbox_deploy.collaborators.services import (
    ServiceController,
    SystemdServiceController,
)

__all__ = [
    "DatabaseTool",
    "PostgresTool",
    "Filesystem",
    "HttpProbe",
    "HttpxProbe",
    "ServiceController",
    "SystemdServiceController",
]
