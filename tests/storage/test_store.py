"""Tests for the JSON storage layer."""

import asyncio

import pytest

from kestrel_swarm.core.models import (
    AgentProfile,
    DelegationRecord,
    DelegationStatus,
    SwarmMember,
    SwarmRun,
    SwarmStatus,
    SwarmStrategy,
)
from kestrel_swarm.storage.store import (
    DelegationStorage,
    ProfileStorage,
    Storage,
    StorageKeyError,
    SwarmStorage,
)


def _record(**fields):
    defaults = dict(
        profile_id="builtin-researcher",
        profile_name="researcher",
        task="t",
        max_depth=3,
        token_budget=1000,
        timeout_ms=1000,
    )
    defaults.update(fields)
    return DelegationRecord(**defaults)


class TestStorage:
    """Key handling shared by every storage class."""

    @pytest.mark.asyncio
    async def test_write_read_remove(self, tmp_path):
        storage = Storage(tmp_path)
        await storage.write(["thing", "one"], {"value": 1})

        assert await storage.read(["thing", "one"]) == {"value": 1}
        assert (tmp_path / "storage" / "thing" / "one.json").exists()
        assert await storage.remove(["thing", "one"]) is True
        assert await storage.read(["thing", "one"]) is None
        assert await storage.remove(["thing", "one"]) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", ["../escape", "a/b", "", "nul\x00"])
    async def test_rejects_unsafe_keys(self, tmp_path, bad):
        storage = Storage(tmp_path)
        with pytest.raises(StorageKeyError):
            await storage.write(["thing", bad], {})

    @pytest.mark.asyncio
    async def test_empty_key_writes_nothing(self, tmp_path):
        storage = Storage(tmp_path)
        with pytest.raises(StorageKeyError):
            await storage.write(["thing", ""], {"value": 1})
        assert not (tmp_path / "storage" / "thing" / ".json").exists()

    @pytest.mark.asyncio
    async def test_write_leaves_no_temporary_files(self, tmp_path):
        storage = Storage(tmp_path)
        await storage.write(["thing", "one"], {"value": 1})
        await storage.write(["thing", "one"], {"value": 2})

        assert [p.name for p in (tmp_path / "storage" / "thing").iterdir()] == ["one.json"]
        assert await storage.list(["thing"]) == [["thing", "one.json"]]

    @pytest.mark.asyncio
    async def test_update_missing_key_returns_none(self, tmp_path):
        storage = Storage(tmp_path)
        assert await storage.update(["thing", "missing"], lambda data: None) is None

    @pytest.mark.asyncio
    async def test_corrupt_document_reads_as_missing(self, tmp_path):
        storage = Storage(tmp_path)
        path = tmp_path / "storage" / "thing"
        path.mkdir(parents=True)
        (path / "broken.json").write_text("{not json")
        assert await storage.read(["thing", "broken"]) is None


class TestProfileStorage:
    @pytest.mark.asyncio
    async def test_lookup_by_name_ignores_case(self, tmp_path):
        storage = ProfileStorage(tmp_path)
        profile = AgentProfile(name="Reviewer", system_prompt="review")
        await storage.create_profile(profile)

        assert (await storage.get_profile_by_name("reviewer")).id == profile.id
        assert await storage.get_profile("../etc") is None


class TestDelegationStorage:
    """Delegation records, status guards and transcripts."""

    @pytest.mark.asyncio
    async def test_start_only_from_pending(self, tmp_path):
        storage = DelegationStorage(tmp_path)
        record = await storage.create_delegation(_record())

        started = await storage.start_delegation(record.id)
        assert started.status == DelegationStatus.RUNNING
        assert started.started_at is not None
        assert await storage.start_delegation(record.id) is None

    @pytest.mark.asyncio
    async def test_first_terminal_transition_wins(self, tmp_path):
        storage = DelegationStorage(tmp_path)
        record = await storage.create_delegation(_record())

        first = await storage.finish_delegation(record.id, DelegationStatus.TIMEOUT, error="late")
        second = await storage.finish_delegation(record.id, DelegationStatus.CANCELLED)

        assert first.status == DelegationStatus.TIMEOUT
        assert second is None
        stored = await storage.get_delegation(record.id)
        assert stored.status == DelegationStatus.TIMEOUT
        assert stored.error == "late"

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, tmp_path):
        storage = DelegationStorage(tmp_path)
        root = await storage.create_delegation(_record(created_at=1.0))
        for i in range(3):
            await storage.create_delegation(
                _record(parent_delegation_id=root.id, depth=1, created_at=2.0 + i)
            )
        await storage.create_delegation(_record(profile_id="builtin-coder", created_at=10.0))

        page, total = await storage.list_delegations(limit=2)
        assert total == 5
        assert [r.created_at for r in page] == [10.0, 4.0]

        children, total = await storage.list_delegations(parent_delegation_id=root.id)
        assert total == 3

        coders, _ = await storage.list_delegations(profile_id="builtin-coder")
        assert len(coders) == 1

        _, pending = await storage.list_delegations(status=DelegationStatus.PENDING)
        assert pending == 5

    @pytest.mark.asyncio
    async def test_reads_during_updates_never_miss_the_record(self, tmp_path):
        """Concurrent readers always see a whole document while it is rewritten."""
        storage = DelegationStorage(tmp_path)
        root = await storage.create_delegation(_record(created_at=1.0))
        child = await storage.create_delegation(
            _record(parent_delegation_id=root.id, depth=1, created_at=2.0)
        )
        done = asyncio.Event()

        async def writer():
            n = 0
            while not done.is_set():
                n += 1
                await storage.update_delegation(root.id, tokens_used_prompt=n)
                await storage.update_delegation(child.id, tokens_used_prompt=n)

        writing = asyncio.create_task(writer())
        missing = 0
        try:
            for _ in range(200):
                if await storage.get_delegation(root.id) is None:
                    missing += 1
                if [r.id for r in await storage.get_tree(root.id)] != [root.id, child.id]:
                    missing += 1
        finally:
            done.set()
            await writing

        assert missing == 0

    @pytest.mark.asyncio
    async def test_tree_and_descendants(self, tmp_path):
        storage = DelegationStorage(tmp_path)
        root = await storage.create_delegation(_record(created_at=1.0))
        late = await storage.create_delegation(
            _record(parent_delegation_id=root.id, depth=1, created_at=3.0)
        )
        early = await storage.create_delegation(
            _record(parent_delegation_id=root.id, depth=1, created_at=2.0)
        )
        grandchild = await storage.create_delegation(
            _record(parent_delegation_id=early.id, depth=2, created_at=4.0)
        )
        await storage.create_delegation(_record(created_at=5.0))
        await storage.finish_delegation(late.id, DelegationStatus.COMPLETED)

        tree = await storage.get_tree(root.id)
        assert [r.id for r in tree] == [root.id, early.id, late.id, grandchild.id]

        active = await storage.list_descendants(
            root.id, statuses=(DelegationStatus.PENDING, DelegationStatus.RUNNING)
        )
        assert {r.id for r in active} == {early.id, grandchild.id}
        assert await storage.get_tree("missing") == []

    @pytest.mark.asyncio
    async def test_messages_are_sequenced(self, tmp_path):
        storage = DelegationStorage(tmp_path)
        record = await storage.create_delegation(_record())

        await storage.append_message(record.id, "system", content="sys")
        await storage.append_message(record.id, "user", content="hi")
        await storage.append_message(
            record.id, "assistant", tool_calls=[{"id": "c1", "name": "x", "arguments": {}}]
        )

        messages = await storage.list_messages(record.id)
        assert [(m.seq, m.role) for m in messages] == [
            (0, "system"),
            (1, "user"),
            (2, "assistant"),
        ]
        assert messages[2].tool_calls[0]["name"] == "x"
        assert await storage.list_messages("other") == []


class TestSwarmStorage:
    """Runs and members with terminal guards."""

    @pytest.mark.asyncio
    async def test_run_finish_guard(self, tmp_path):
        storage = SwarmStorage(tmp_path)
        run = await storage.create_run(
            SwarmRun(
                template_id="tpl",
                template_name="team",
                task="t",
                strategy=SwarmStrategy.PARALLEL,
                token_budget=100,
            )
        )

        finished = await storage.finish_run(run.id, SwarmStatus.CANCELLED)
        assert finished.status == SwarmStatus.CANCELLED
        assert await storage.finish_run(run.id, SwarmStatus.COMPLETED, result="late") is None
        assert (await storage.get_run(run.id)).result is None
        assert await storage.count_runs_for_template("tpl") == 1

    @pytest.mark.asyncio
    async def test_members_ordered_by_seq(self, tmp_path):
        storage = SwarmStorage(tmp_path)
        for seq in (2, 0, 1):
            await storage.create_member(
                SwarmMember(swarm_run_id="run", role=f"r{seq}", profile_name="p", seq_order=seq)
            )

        members = await storage.list_members("run")
        assert [m.role for m in members] == ["r0", "r1", "r2"]

        member = members[0]
        assert (await storage.finish_member("run", member.id, DelegationStatus.FAILED)) is not None
        assert await storage.finish_member("run", member.id, DelegationStatus.COMPLETED) is None
