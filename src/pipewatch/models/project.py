"""
models/project.py — Pydantic model for the projects table.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class Project(BaseModel):
    """A monitored GitLab project. `group` is the configured group it came from."""

    id: int
    name: str
    path: str
    group: str | None = None

    @classmethod
    def from_api(cls, payload: dict[str, Any], *, group: str | None = None) -> "Project":
        return cls(
            id=payload["id"],
            name=payload.get("name") or payload.get("path") or str(payload["id"]),
            path=payload.get("path_with_namespace") or payload.get("path") or str(payload["id"]),
            group=group,
        )

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> "Project":
        return cls(id=row["id"], name=row["name"], path=row["path"], group=row.get("group_path"))

    def to_insert_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "path": self.path, "group_path": self.group}
