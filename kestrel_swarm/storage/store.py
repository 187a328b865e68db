"""kestrel-swarm - Storage layer with JSON persistence"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from kestrel_swarm.core.models import (
    AgentProfile,
    DelegationMessage,
    DelegationRecord,
    DelegationStatus,
    SwarmMember,
    SwarmRun,
    SwarmStatus,
    SwarmTemplate,
)


class StorageKeyError(ValueError):
    """Raised for storage keys that would escape the storage directory."""


def _paginate(items: List[Any], limit: Optional[int], offset: int) -> List[Any]:
    if limit is None:
        return items[offset:]
    return items[offset : offset + limit]


class Storage:
    """JSON storage layer keyed by path segments.

    Read-modify-write updates are serialised through one asyncio.Lock per
    storage instance.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.storage_dir = self.base_dir / "storage"
        self._lock = asyncio.Lock()

    async def _get_path(self, *keys: str) -> Path:
        """Get full path for a key with path traversal protection"""
        for key in keys:
            if not key or ".." in key or "/" in key or "\\" in key or "\x00" in key:
                raise StorageKeyError(f"Invalid storage key: {key!r}")

        path = self.storage_dir / "/".join(keys)
        resolved = path.resolve()
        if not str(resolved).startswith(str(self.storage_dir.resolve())):
            raise StorageKeyError(f"Path traversal attempt detected: {path}")
        return path

    async def _document_path(self, key: List[str]) -> Path:
        """Validated path of the JSON document stored under ``key``"""
        path = await self._get_path(*key)
        if path.suffix != ".json":
            path = path.with_name(path.name + ".json")
        return path

    async def read(self, key: List[str]) -> Optional[Dict[str, Any]]:
        """Read JSON data by key"""
        path = await self._document_path(key)
        try:
            async with aiofiles.open(path, mode="r") as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        try:
            data: Dict[str, Any] = json.loads(content)
        except json.JSONDecodeError:
            return None
        return data

    async def write(self, key: List[str], data: Dict[str, Any]) -> None:
        """Write JSON data by key.

        The document is written to a temporary sibling and moved into place,
        so readers see either the old or the new document, never a partial one.
        """
        path = await self._document_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, mode="w") as f:
                await f.write(json.dumps(data, indent=2, ensure_ascii=False))
            await aiofiles.os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    async def update(
        self, key: List[str], fn: Callable[[Dict[str, Any]], None]
    ) -> Optional[Dict[str, Any]]:
        """Apply fn to the stored document under the lock; None if missing"""
        async with self._lock:
            data = await self.read(key)
            if data is None:
                return None
            fn(data)
            await self.write(key, data)
            return data

    async def remove(self, key: List[str]) -> bool:
        """Remove data by key"""
        path = await self._document_path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    async def list(self, prefix: List[str]) -> List[List[str]]:
        """List all keys with given prefix"""
        prefix_path = await self._get_path(*prefix)
        if not prefix_path.exists():
            return []
        keys = []
        for path in prefix_path.rglob("*.json"):
            relative = path.relative_to(self.storage_dir)
            keys.append(list(relative.parts))
        keys.sort()
        return keys

    async def read_all(self, prefix: List[str]) -> List[Dict[str, Any]]:
        documents = []
        for key in await self.list(prefix):
            data = await self.read(key)
            if data:
                documents.append(data)
        return documents

    async def _load_models(self, prefix: List[str], model: Any) -> List[Any]:
        records = []
        for data in await self.read_all(prefix):
            try:
                records.append(model(**data))
            except ValidationError:
                continue
        return records


class ProfileStorage(Storage):
    """Agent profile storage operations"""

    async def create_profile(self, profile: AgentProfile) -> AgentProfile:
        await self.write(["profile", profile.id], profile.model_dump(mode="json"))
        return profile

    async def save_profile(self, profile: AgentProfile) -> AgentProfile:
        profile.updated_at = time.time()
        await self.write(["profile", profile.id], profile.model_dump(mode="json"))
        return profile

    async def get_profile(self, profile_id: str) -> Optional[AgentProfile]:
        try:
            data = await self.read(["profile", profile_id])
        except StorageKeyError:
            return None
        return AgentProfile(**data) if data else None

    async def get_profile_by_name(self, name: str) -> Optional[AgentProfile]:
        wanted = name.lower().strip()
        for profile in await self.list_profiles():
            if profile.name.lower() == wanted:
                return profile
        return None

    async def list_profiles(self) -> List[AgentProfile]:
        """List profiles, built-ins first, then by name"""
        profiles = await self._load_models(["profile"], AgentProfile)
        profiles.sort(key=lambda p: (not p.is_builtin, p.name.lower()))
        return profiles

    async def delete_profile(self, profile_id: str) -> bool:
        return await self.remove(["profile", profile_id])


class DelegationStorage(Storage):
    """Delegation and transcript storage operations"""

    async def create_delegation(self, record: DelegationRecord) -> DelegationRecord:
        await self.write(["delegation", record.id], record.model_dump(mode="json"))
        return record

    async def get_delegation(self, delegation_id: str) -> Optional[DelegationRecord]:
        try:
            data = await self.read(["delegation", delegation_id])
        except StorageKeyError:
            return None
        return DelegationRecord(**data) if data else None

    async def update_delegation(
        self, delegation_id: str, **changes: Any
    ) -> Optional[DelegationRecord]:
        """Apply field changes unconditionally"""

        def apply(data: Dict[str, Any]) -> None:
            data.update(_jsonable(changes))

        data = await self.update(["delegation", delegation_id], apply)
        return DelegationRecord(**data) if data else None

    async def start_delegation(self, delegation_id: str) -> Optional[DelegationRecord]:
        """Move a pending delegation to running; None if it is no longer pending"""
        applied = False

        def apply(data: Dict[str, Any]) -> None:
            nonlocal applied
            if data["status"] != DelegationStatus.PENDING.value:
                return
            data["status"] = DelegationStatus.RUNNING.value
            data["started_at"] = time.time()
            applied = True

        data = await self.update(["delegation", delegation_id], apply)
        if data is None or not applied:
            return None
        return DelegationRecord(**data)

    async def finish_delegation(
        self, delegation_id: str, status: DelegationStatus, **changes: Any
    ) -> Optional[DelegationRecord]:
        """Move a non-terminal delegation to a terminal status.

        Returns the updated record, or None when the record is missing or
        already terminal (the first terminal transition wins).
        """
        applied = False

        def apply(data: Dict[str, Any]) -> None:
            nonlocal applied
            if DelegationStatus(data["status"]).is_terminal:
                return
            data.update(_jsonable(changes))
            data["status"] = status.value
            data["completed_at"] = time.time()
            applied = True

        data = await self.update(["delegation", delegation_id], apply)
        if data is None or not applied:
            return None
        return DelegationRecord(**data)

    async def list_delegations(
        self,
        status: Optional[DelegationStatus] = None,
        profile_id: Optional[str] = None,
        parent_delegation_id: Optional[str] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> Tuple[List[DelegationRecord], int]:
        """List delegations newest first with total count before pagination"""
        records: List[DelegationRecord] = await self._load_models(["delegation"], DelegationRecord)
        if status is not None:
            records = [r for r in records if r.status == status]
        if profile_id is not None:
            records = [r for r in records if r.profile_id == profile_id]
        if parent_delegation_id is not None:
            records = [r for r in records if r.parent_delegation_id == parent_delegation_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return _paginate(records, limit, offset), len(records)

    async def get_tree(self, root_id: str) -> List[DelegationRecord]:
        """Return the root and all descendants, parent-first.

        Ordered breadth-first: by depth, then by creation time within a level.
        """
        records: List[DelegationRecord] = await self._load_models(["delegation"], DelegationRecord)
        by_id = {r.id: r for r in records}
        root = by_id.get(root_id)
        if root is None:
            return []

        children: Dict[str, List[DelegationRecord]] = {}
        for record in records:
            if record.parent_delegation_id:
                children.setdefault(record.parent_delegation_id, []).append(record)

        tree = [root]
        level = [root]
        seen = {root.id}
        while level:
            next_level = []
            for parent in level:
                for child in children.get(parent.id, []):
                    if child.id not in seen:
                        seen.add(child.id)
                        next_level.append(child)
            next_level.sort(key=lambda r: r.created_at)
            tree.extend(next_level)
            level = next_level
        return tree

    async def list_descendants(
        self, root_id: str, statuses: Optional[Iterable[DelegationStatus]] = None
    ) -> List[DelegationRecord]:
        descendants = (await self.get_tree(root_id))[1:]
        if statuses is not None:
            wanted = set(statuses)
            descendants = [d for d in descendants if d.status in wanted]
        return descendants

    async def append_message(
        self,
        delegation_id: str,
        role: str,
        content: Optional[str] = None,
        tool_calls: Optional[List[Dict[str, Any]]] = None,
        tool_result: Optional[Dict[str, Any]] = None,
        token_count: int = 0,
    ) -> DelegationMessage:
        """Append a transcript entry with the next sequence number"""
        async with self._lock:
            seq = len(await self.list(["message", delegation_id]))
            message = DelegationMessage(
                delegation_id=delegation_id,
                seq=seq,
                role=role,
                content=content,
                tool_calls=tool_calls,
                tool_result=tool_result,
                token_count=token_count,
            )
            await self.write(
                ["message", delegation_id, message.id], message.model_dump(mode="json")
            )
        return message

    async def list_messages(self, delegation_id: str) -> List[DelegationMessage]:
        try:
            messages: List[DelegationMessage] = await self._load_models(
                ["message", delegation_id], DelegationMessage
            )
        except StorageKeyError:
            return []
        messages.sort(key=lambda m: m.seq)
        return messages


class SwarmStorage(Storage):
    """Swarm template, run and member storage operations"""

    async def create_template(self, template: SwarmTemplate) -> SwarmTemplate:
        await self.write(["swarm_template", template.id], template.model_dump(mode="json"))
        return template

    async def get_template(self, template_id: str) -> Optional[SwarmTemplate]:
        try:
            data = await self.read(["swarm_template", template_id])
        except StorageKeyError:
            return None
        return SwarmTemplate(**data) if data else None

    async def get_template_by_name(self, name: str) -> Optional[SwarmTemplate]:
        wanted = name.lower().strip()
        for template in await self.list_templates():
            if template.name.lower() == wanted:
                return template
        return None

    async def list_templates(self) -> List[SwarmTemplate]:
        templates = await self._load_models(["swarm_template"], SwarmTemplate)
        templates.sort(key=lambda t: (not t.is_builtin, t.name.lower()))
        return templates

    async def delete_template(self, template_id: str) -> bool:
        return await self.remove(["swarm_template", template_id])

    async def create_run(self, run: SwarmRun) -> SwarmRun:
        await self.write(["swarm_run", run.id], run.model_dump(mode="json"))
        return run

    async def get_run(self, run_id: str) -> Optional[SwarmRun]:
        try:
            data = await self.read(["swarm_run", run_id])
        except StorageKeyError:
            return None
        return SwarmRun(**data) if data else None

    async def update_run(self, run_id: str, **changes: Any) -> Optional[SwarmRun]:
        def apply(data: Dict[str, Any]) -> None:
            data.update(_jsonable(changes))

        data = await self.update(["swarm_run", run_id], apply)
        return SwarmRun(**data) if data else None

    async def finish_run(self, run_id: str, status: SwarmStatus, **changes: Any) -> Optional[SwarmRun]:
        """Move a non-terminal run to a terminal status; None if already terminal"""
        applied = False

        def apply(data: Dict[str, Any]) -> None:
            nonlocal applied
            if SwarmStatus(data["status"]).is_terminal:
                return
            data.update(_jsonable(changes))
            data["status"] = status.value
            data["completed_at"] = time.time()
            applied = True

        data = await self.update(["swarm_run", run_id], apply)
        if data is None or not applied:
            return None
        return SwarmRun(**data)

    async def list_runs(
        self,
        status: Optional[SwarmStatus] = None,
        limit: Optional[int] = 50,
        offset: int = 0,
    ) -> Tuple[List[SwarmRun], int]:
        runs: List[SwarmRun] = await self._load_models(["swarm_run"], SwarmRun)
        if status is not None:
            runs = [r for r in runs if r.status == status]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return _paginate(runs, limit, offset), len(runs)

    async def count_runs_for_template(self, template_id: str) -> int:
        runs: List[SwarmRun] = await self._load_models(["swarm_run"], SwarmRun)
        return sum(1 for r in runs if r.template_id == template_id)

    async def create_member(self, member: SwarmMember) -> SwarmMember:
        await self.write(
            ["swarm_member", member.swarm_run_id, member.id], member.model_dump(mode="json")
        )
        return member

    async def update_member(
        self, run_id: str, member_id: str, **changes: Any
    ) -> Optional[SwarmMember]:
        def apply(data: Dict[str, Any]) -> None:
            data.update(_jsonable(changes))

        data = await self.update(["swarm_member", run_id, member_id], apply)
        return SwarmMember(**data) if data else None

    async def finish_member(
        self, run_id: str, member_id: str, status: DelegationStatus, **changes: Any
    ) -> Optional[SwarmMember]:
        """Move a non-terminal member to a terminal status; None if already terminal"""
        applied = False

        def apply(data: Dict[str, Any]) -> None:
            nonlocal applied
            if DelegationStatus(data["status"]).is_terminal:
                return
            data.update(_jsonable(changes))
            data["status"] = status.value
            data["completed_at"] = time.time()
            applied = True

        data = await self.update(["swarm_member", run_id, member_id], apply)
        if data is None or not applied:
            return None
        return SwarmMember(**data)

    async def list_members(self, run_id: str) -> List[SwarmMember]:
        members: List[SwarmMember] = await self._load_models(["swarm_member", run_id], SwarmMember)
        members.sort(key=lambda m: (m.seq_order, m.created_at))
        return members


def _jsonable(changes: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in changes.items()}
