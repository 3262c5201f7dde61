# Authorization Sync - Deduplicator Tests
"""
Tests for staging deduplication against an in-memory store.
"""
import asyncio
from datetime import datetime

from authz_sync.core.sources import SOURCES
from authz_sync.engine.deduplicator import Deduplicator, dedup_sql

SC = SOURCES["SC"]
STG = SC.staging_grant_table
STG_RF = SC.staging_role_function_table


class TestDedupSql:
    """Tests for statement rendering."""

    def test_renders_partition_and_rowid(self):
        sql = dedup_sql("stg_x", "a, b", "a ASC", "ctid")
        assert "DELETE FROM stg_x" in sql
        assert "PARTITION BY a, b" in sql
        assert "ctid AS rid" in sql
        assert "changed_at DESC NULLS LAST" in sql


class TestDeduplicate:
    """Tests for Deduplicator.deduplicate."""

    def test_duplicate_pair_collapses(self, open_stores):
        """Three staged rows with one duplicate pair leave two."""
        async def scenario():
            async with open_stores() as stores:
                await stores.add_staged_grant(STG, "SYS", "1001", "R1", created_at=datetime(2026, 1, 1))
                await stores.add_staged_grant(STG, "SYS", "1001", "R1", created_at=datetime(2026, 2, 1))
                await stores.add_staged_grant(STG, "SYS", "1002", "R1")
                removed = await Deduplicator(stores.canonical).deduplicate(SC)
                remaining = await stores.count(STG)
                return removed, remaining

        removed, remaining = asyncio.run(scenario())
        assert removed == {"user_role": 1, "role_function": 0}
        assert remaining == 2

    def test_latest_changed_at_wins(self, open_stores):
        async def scenario():
            async with open_stores() as stores:
                await stores.add_staged_grant(
                    STG, "SYS", "1001", "R1", changed_at=datetime(2026, 5, 1), role_name="old"
                )
                await stores.add_staged_grant(
                    STG, "SYS", "1001", "R1", changed_at=datetime(2026, 6, 1), role_name="new"
                )
                await stores.add_staged_grant(STG, "SYS", "1001", "R1", role_name="never changed")
                await Deduplicator(stores.canonical).deduplicate(SC)
                return await stores.canonical.fetch(f"SELECT role_name FROM {STG}")

        assert asyncio.run(scenario()) == [{"role_name": "new"}]

    def test_latest_created_at_breaks_tie(self, open_stores):
        async def scenario():
            async with open_stores() as stores:
                await stores.add_staged_grant(
                    STG, "SYS", "1001", "R1", created_at=datetime(2026, 1, 1), role_name="t1"
                )
                await stores.add_staged_grant(
                    STG, "SYS", "1001", "R1", created_at=datetime(2026, 1, 2), role_name="t2"
                )
                await Deduplicator(stores.canonical).deduplicate(SC)
                return await stores.canonical.fetch(f"SELECT role_name FROM {STG}")

        assert asyncio.run(scenario()) == [{"role_name": "t2"}]

    def test_identical_rows_keep_one(self, open_stores):
        async def scenario():
            async with open_stores() as stores:
                for _ in range(3):
                    await stores.add_staged_role_function(STG_RF, "SYS", "R1", "S1")
                await stores.add_staged_role_function(STG_RF, "SYS", "R1", "S2")
                removed = await Deduplicator(stores.canonical).deduplicate(SC)
                return removed, await stores.count(STG_RF)

        removed, remaining = asyncio.run(scenario())
        assert removed["role_function"] == 2
        assert remaining == 2

    def test_second_run_removes_nothing(self, open_stores):
        async def scenario():
            async with open_stores() as stores:
                await stores.add_staged_grant(STG, "SYS", "1001", "R1")
                await stores.add_staged_grant(STG, "SYS", "1001", "R1")
                dedup = Deduplicator(stores.canonical)
                first = await dedup.deduplicate(SC)
                second = await dedup.deduplicate(SC)
                return first, second

        first, second = asyncio.run(scenario())
        assert first["user_role"] == 1
        assert second == {"user_role": 0, "role_function": 0}

    def test_other_sources_untouched(self, open_stores):
        ldap = SOURCES["LDAP"]

        async def scenario():
            async with open_stores() as stores:
                for _ in range(2):
                    await stores.add_staged_grant(
                        ldap.staging_grant_table, "SYS", "1001", "R1", created_by=ldap.actor
                    )
                await Deduplicator(stores.canonical).deduplicate(SC)
                return await stores.count(ldap.staging_grant_table)

        assert asyncio.run(scenario()) == 2
