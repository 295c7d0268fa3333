"""Workspace store — test, fixture and environment definitions kept as JSON files.

Layout below the data directory::

    .test/<folder>/<name>.json
    .fixture/<name>.json
    .environment/<name>.json
    state.json                  # selected environment
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from webpilot.models.workspace import (
    FIXTURE_MENU_ID,
    MENU_IDS,
    TEST_MENU_ID,
    Definition,
    EnvironmentItem,
    FixtureItem,
    FolderItem,
    TestItem,
    WorkspaceItem,
)

logger = logging.getLogger(__name__)

_UNSAFE_FILE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_UNSAFE_FOLDER_CHARS = re.compile(r'[<>:"/\\|?*]')


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _parse_time(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _to_file_content(item: Definition) -> dict[str, Any]:
    content: dict[str, Any] = {"id": item.id, "name": item.name}
    if isinstance(item, TestItem):
        content["url"] = item.url
        if item.fixture_id:
            content["fixtureId"] = item.fixture_id
        content["actions"] = [a.model_dump(by_alias=True) for a in item.actions]
    elif isinstance(item, FixtureItem):
        content["actions"] = [a.model_dump(by_alias=True) for a in item.actions]
    else:
        content["environmentVariables"] = item.environment_variables
    content["createdAt"] = _iso(item.created_at)
    content["updatedAt"] = _iso(item.updated_at)
    return content


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON through a temporary file and rename it over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp_path, path)


class WorkspaceStore:
    """CRUD access to workspace definitions, keyed by id and by file path."""

    def __init__(self, data_dir: Path):
        self.data_dir = data_dir
        self.dirs = {menu: data_dir / f".{menu}" for menu in MENU_IDS}
        self._items: list[WorkspaceItem] = []

    def initialize(self) -> None:
        for path in self.dirs.values():
            path.mkdir(parents=True, exist_ok=True)

    def load(self) -> list[WorkspaceItem]:
        """(Re)read every definition from disk."""
        items: list[WorkspaceItem] = []
        for menu, root in self.dirs.items():
            if root.exists():
                self._load_dir(menu, root, root, items)
        self._items = items
        logger.debug("Loaded %d workspace items from %s", len(items), self.data_dir)
        return items

    @property
    def items(self) -> list[WorkspaceItem]:
        return list(self._items)

    def _load_dir(self, menu: str, root: Path, current: Path, items: list[WorkspaceItem]) -> None:
        parent_id = menu if current == root else str(current)
        for entry in sorted(current.iterdir()):
            if entry.is_dir():
                items.append(FolderItem(
                    id=str(entry), name=entry.name, parent_id=parent_id, full_path=str(entry),
                ))
                self._load_dir(menu, root, entry, items)
            elif entry.is_file() and entry.suffix == ".json":
                try:
                    item, assigned_id = self._read_definition(menu, entry, parent_id)
                except (OSError, ValueError) as e:
                    logger.warning("Error reading definition %s: %s", entry, e)
                    continue
                items.append(item)
                if assigned_id:
                    # Persist the generated id so it stays stable across loads.
                    self.update(str(entry), item)

    def _read_definition(self, menu: str, path: Path, parent_id: str) -> tuple[Definition, bool]:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("definition must be a JSON object")

        assigned_id = not data.get("id")
        common = {
            "id": data.get("id") or generate_id(menu),
            "name": data.get("name") or path.stem,
            "parent_id": parent_id,
            "full_path": str(path),
            "created_at": _parse_time(data.get("createdAt")),
            "updated_at": _parse_time(data.get("updatedAt")),
        }
        if menu == TEST_MENU_ID:
            item: Definition = TestItem(
                **common,
                url=data.get("url") or "",
                fixture_id=data.get("fixtureId"),
                actions=data.get("actions") or [],
            )
        elif menu == FIXTURE_MENU_ID:
            item = FixtureItem(**common, actions=data.get("actions") or [])
        else:
            item = EnvironmentItem(
                **common, environment_variables=data.get("environmentVariables") or {},
            )
        return item, assigned_id

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_id(self, item_id: str) -> Optional[Definition]:
        for item in self._items:
            if item.id == item_id and not isinstance(item, FolderItem):
                return item
        return None

    def get_folder(self, folder_id: str) -> Optional[FolderItem]:
        for item in self._items:
            if isinstance(item, FolderItem) and item.id == folder_id:
                return item
        return None

    def get_by_folder(self, folder_id: str) -> list[TestItem]:
        """Tests directly in a folder, followed by those in its sub-folders."""
        direct = [i for i in self._items if isinstance(i, TestItem) and i.parent_id == folder_id]
        nested: list[TestItem] = []
        for sub in self._items:
            if isinstance(sub, FolderItem) and sub.parent_id == folder_id:
                nested.extend(self.get_by_folder(sub.id))
        return direct + nested

    def environments(self) -> list[EnvironmentItem]:
        return [i for i in self._items if isinstance(i, EnvironmentItem)]

    def find_folder(self, name_or_path: str) -> Optional[str]:
        """Resolve a CLI folder argument to a folder id (a menu id is a folder too)."""
        if name_or_path in (TEST_MENU_ID, "", "."):
            return TEST_MENU_ID
        candidate = Path(name_or_path)
        for item in self._items:
            if not isinstance(item, FolderItem):
                continue
            if item.id == name_or_path or item.name == name_or_path:
                return item.id
            if not candidate.is_absolute() and item.id == str(self.dirs[TEST_MENU_ID] / candidate):
                return item.id
        return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update(self, path: str, definition: Definition) -> None:
        write_json_atomic(Path(path), _to_file_content(definition))
        for index, item in enumerate(self._items):
            if item.full_path == path:
                self._items[index] = definition
                break

    def create_test(self, name: str, folder_path: str | None = None,
                    url: str = "http://localhost:8080/") -> TestItem:
        folder = Path(folder_path) if folder_path else self.dirs[TEST_MENU_ID]
        file_name = f"{_UNSAFE_FILE_CHARS.sub('_', name).strip()}_{int(time.time() * 1000)}.json"
        test = TestItem(
            id=generate_id(TEST_MENU_ID),
            name=name,
            url=url,
            parent_id=folder_path or TEST_MENU_ID,
            full_path=str(folder / file_name),
        )
        write_json_atomic(folder / file_name, _to_file_content(test))
        self._items.append(test)
        return test

    def create_folder(self, name: str, parent_path: str | None = None,
                      menu: str = TEST_MENU_ID) -> FolderItem:
        sanitized = _UNSAFE_FOLDER_CHARS.sub("_", name).strip()
        full_path = Path(parent_path) / sanitized if parent_path else self.dirs[menu] / sanitized
        full_path.mkdir(parents=True, exist_ok=True)
        folder = FolderItem(
            id=str(full_path), name=sanitized,
            parent_id=parent_path or menu, full_path=str(full_path),
        )
        self._items.append(folder)
        return folder


class EnvironmentSelection:
    """Remembers which environment definition is active for new runs."""

    def __init__(self, store: WorkspaceStore, state_path: Path | None = None):
        self.store = store
        self.state_path = state_path or store.data_dir / "state.json"

    def _read_state(self) -> dict[str, Any]:
        if not self.state_path.exists():
            return {}
        try:
            with open(self.state_path) as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, ValueError) as e:
            logger.warning("Failed to read workspace state: %s", e)
            return {}

    def selected(self) -> Optional[EnvironmentItem]:
        env_id = self._read_state().get("selectedEnvironmentId")
        if not env_id:
            return None
        item = self.store.get_by_id(env_id)
        return item if isinstance(item, EnvironmentItem) else None

    def is_selected(self, env_id: str) -> bool:
        current = self.selected()
        return current is not None and current.id == env_id

    def select(self, env_id: str) -> EnvironmentItem:
        item = self.store.get_by_id(env_id)
        if not isinstance(item, EnvironmentItem):
            raise KeyError(f"Environment not found: {env_id}")
        state = self._read_state()
        state["selectedEnvironmentId"] = item.id
        write_json_atomic(self.state_path, state)
        logger.info("Selected environment %s", item.name)
        return item

    def clear(self) -> None:
        state = self._read_state()
        state.pop("selectedEnvironmentId", None)
        write_json_atomic(self.state_path, state)
