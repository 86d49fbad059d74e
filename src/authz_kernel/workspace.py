# SPDX-License-Identifier: Apache-2.0
"""File: src/authz_kernel/workspace.py

Project: authz-kernel
Package: authz_kernel

Description:
    Project / folder / file / user authorization policy built on the kernel.

    - project: the owner holds every action; members hold the role recorded
      in their membership (``editor`` or ``viewer``).
    - folder: a top-level folder inherits each role from its project, a
      nested folder from its parent folder.
    - file: inherits each role from its containing folder.
    - user: ``admin`` accounts may do anything; a user may read and edit
      their own record.

    Facts come from a ``WorkspaceStore``; the kernel never stores
    relationships itself. ``InMemoryWorkspaceStore`` backs tests and local
    development.

"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Literal, Optional, Protocol, Tuple

from .builder import RoleSet, create_access_control
from .config import EngineSettings
from .engine import PolicyEngine
from .relationships import ParentRef, global_role, inherit_role, is_self, member_with_role, owned_by
from .schema import Schema

logger = logging.getLogger(__name__)

WorkspaceResource = Literal["project", "folder", "file", "user"]
WorkspaceRole = Literal["owner", "editor", "viewer", "admin", "self"]

WORKSPACE_RESOURCES: Dict[str, Tuple[str, ...]] = {
    "project": ("delete", "read", "edit", "share", "manage-members"),
    "folder": ("delete", "read", "edit", "share", "view"),
    "file": ("delete", "read", "edit", "share"),
    "user": ("create", "delete", "read", "edit"),
}

WORKSPACE_ROLES = {
    "project": [
        {"name": "owner", "actions": ["delete", "read", "edit", "share", "manage-members"]},
        {"name": "editor", "actions": ["read", "edit"]},
        {"name": "viewer", "actions": ["read"]},
    ],
    "folder": [
        {"name": "owner", "actions": ["delete", "read", "edit", "share", "view"]},
        {"name": "editor", "actions": ["read", "edit", "view"]},
        {"name": "viewer", "actions": ["read", "view"]},
    ],
    "file": [
        {"name": "owner", "actions": ["delete", "read", "edit", "share"]},
        {"name": "editor", "actions": ["read", "edit"]},
        {"name": "viewer", "actions": ["read"]},
    ],
    "user": [
        {"name": "admin", "actions": ["create", "delete", "read", "edit"]},
        {"name": "self", "actions": ["read", "edit"]},
    ],
}

INHERITED_ROLES = ("owner", "editor", "viewer")


class WorkspaceStore(Protocol):
    """Read-only relationship facts the workspace policy depends on."""

    async def project_owner(self, project_id: str) -> Optional[str]: ...

    async def project_member_role(self, project_id: str, user_id: str) -> Optional[str]: ...

    async def folder_parent(self, folder_id: str) -> Optional[ParentRef]:
        """The owning project for a top-level folder, else the parent folder."""
        ...

    async def file_folder(self, file_id: str) -> Optional[str]: ...

    async def user_exists(self, user_id: str) -> bool: ...

    async def user_role(self, user_id: str) -> Optional[str]: ...


@dataclass
class InMemoryWorkspaceStore:
    users: Dict[str, str] = field(default_factory=dict)  # user_id -> account role
    project_owners: Dict[str, str] = field(default_factory=dict)
    project_members: Dict[Tuple[str, str], str] = field(default_factory=dict)  # (project, user) -> role
    folder_projects: Dict[str, str] = field(default_factory=dict)
    folder_parents: Dict[str, str] = field(default_factory=dict)
    file_folders: Dict[str, str] = field(default_factory=dict)

    def add_user(self, user_id: str, role: str = "user") -> None:
        self.users[user_id] = role

    def add_project(self, project_id: str, owner_id: str) -> None:
        self.project_owners[project_id] = owner_id

    def add_member(self, project_id: str, user_id: str, role: str) -> None:
        self.project_members[(project_id, user_id)] = role

    def add_folder(self, folder_id: str, *, project_id: Optional[str] = None, parent_id: Optional[str] = None) -> None:
        if project_id is not None:
            self.folder_projects[folder_id] = project_id
        if parent_id is not None:
            self.folder_parents[folder_id] = parent_id

    def add_file(self, file_id: str, folder_id: str) -> None:
        self.file_folders[file_id] = folder_id

    async def project_owner(self, project_id: str) -> Optional[str]:
        return self.project_owners.get(project_id)

    async def project_member_role(self, project_id: str, user_id: str) -> Optional[str]:
        return self.project_members.get((project_id, user_id))

    async def folder_parent(self, folder_id: str) -> Optional[ParentRef]:
        project_id = self.folder_projects.get(folder_id)
        if project_id is not None:
            return ParentRef("project", project_id)
        parent_id = self.folder_parents.get(folder_id)
        if parent_id is not None:
            return ParentRef("folder", parent_id)
        return None

    async def file_folder(self, file_id: str) -> Optional[str]:
        return self.file_folders.get(file_id)

    async def user_exists(self, user_id: str) -> bool:
        return user_id in self.users

    async def user_role(self, user_id: str) -> Optional[str]:
        return self.users.get(user_id)


def build_workspace_policies(store: WorkspaceStore) -> Tuple[RoleSet[WorkspaceResource, WorkspaceRole], Schema]:
    roles: RoleSet[WorkspaceResource, WorkspaceRole] = create_access_control(WORKSPACE_RESOURCES).resource_roles(
        WORKSPACE_ROLES
    )  # type: ignore[assignment]

    async def file_parent(file_id: str) -> Optional[ParentRef]:
        folder_id = await store.file_folder(file_id)
        return ParentRef("folder", folder_id) if folder_id else None

    schema = roles.role_conditions(
        {
            "project": {
                "owner": owned_by(store.project_owner),
                "editor": member_with_role(store.project_member_role, "editor"),
                "viewer": member_with_role(store.project_member_role, "viewer"),
            },
            "folder": {name: inherit_role(roles.has_role, store.folder_parent, name) for name in INHERITED_ROLES},
            "file": {name: inherit_role(roles.has_role, file_parent, name) for name in INHERITED_ROLES},
            "user": {
                "admin": global_role(store.user_role, "admin"),
                "self": is_self(store.user_exists),
            },
        }
    )
    return roles, schema


def create_workspace_engine(
    store: WorkspaceStore, settings: Optional[EngineSettings] = None
) -> Tuple[PolicyEngine, RoleSet[WorkspaceResource, WorkspaceRole]]:
    """Build the workspace schema, an engine over it, and bind the role proxy."""
    roles, schema = build_workspace_policies(store)
    engine = PolicyEngine(schema, settings)
    roles.bind(engine)
    logger.info("Workspace policy engine ready (%d resource types)", len(schema))
    return engine, roles


__all__ = [
    "INHERITED_ROLES",
    "InMemoryWorkspaceStore",
    "WORKSPACE_RESOURCES",
    "WORKSPACE_ROLES",
    "WorkspaceStore",
    "build_workspace_policies",
    "create_workspace_engine",
]
