"""Workspace definitions: tests, fixtures, environments and folders."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

TEST_MENU_ID = "test"
FIXTURE_MENU_ID = "fixture"
ENV_MENU_ID = "environment"
MENU_IDS = (TEST_MENU_ID, FIXTURE_MENU_ID, ENV_MENU_ID)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TestAction(BaseModel):
    action: str
    expected_result: str = Field(default="", alias="expectedResult")

    model_config = ConfigDict(populate_by_name=True)


class _Item(BaseModel):
    id: str
    name: str
    parent_id: Optional[str] = None
    full_path: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class TestItem(_Item):
    type: Literal["test"] = "test"
    url: str = ""
    fixture_id: Optional[str] = None
    actions: list[TestAction] = Field(default_factory=list)


class FixtureItem(_Item):
    type: Literal["fixture"] = "fixture"
    actions: list[TestAction] = Field(default_factory=list)


class EnvironmentItem(_Item):
    type: Literal["environment"] = "environment"
    environment_variables: dict[str, str] = Field(default_factory=dict)


class FolderItem(_Item):
    type: Literal["folder"] = "folder"


Definition = TestItem | FixtureItem | EnvironmentItem
WorkspaceItem = TestItem | FixtureItem | EnvironmentItem | FolderItem
