"""Project listing data model.

A project is one directory under the Claude projects root; each
``*.jsonl`` file inside it is one recorded agent session.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ProjectRecord(BaseModel):
    """One entry of the project listing sent in ``projects_updated``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(description="Directory name under the projects root (encoded path).")
    path: str | None = Field(default=None, description="Best-effort decoded working directory.")
    full_path: str = Field(description="Absolute path of the project directory.")
    session_count: int = 0
    last_activity: datetime | None = None
