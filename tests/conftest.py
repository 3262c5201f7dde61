# Authorization Sync - Shared Test Fixtures
"""
Shared pytest fixtures.

Every store is a private in-memory SQLite database running the same SQL
the jobs run against PostgreSQL. Tests drive coroutines with asyncio.run,
so stores are opened inside the test's own event loop via ``open_stores``.
"""
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Dict, Optional, Set, Tuple

import pytest

from authz_sync.clients.database import SqliteDatabase
from authz_sync.core.schema import create_canonical_schema

AS_OF = datetime(2026, 10, 19, 2, 0, 0)

DIRECTORY_DDL = [
    "CREATE TABLE tb_m_system (system_id TEXT, system_name TEXT)",
    "CREATE TABLE tb_m_role (role_id TEXT, system_id TEXT, role_name TEXT)",
    "CREATE TABLE tb_m_company_of_origin (company_id TEXT, company_code TEXT)",
    """CREATE TABLE tb_m_employee (
        username TEXT, no_reg TEXT, company_id TEXT, user_expiration_date DATE
    )""",
    "CREATE TABLE tb_m_authorization_mapping (username TEXT, system_id TEXT, role_id TEXT)",
    """CREATE TABLE tb_m_authorization_detail (
        system_id TEXT, role_id TEXT, screen_id TEXT, screen_auth TEXT
    )""",
    "CREATE TABLE tb_m_screen (screen_id TEXT, screen_name TEXT)",
]

SECURITY_ADMIN_DDL = [
    "CREATE TABLE tb_m_application (id TEXT PRIMARY KEY, name TEXT)",
    "CREATE TABLE tb_m_user (username TEXT PRIMARY KEY, reg_no TEXT, company INTEGER)",
    "CREATE TABLE tb_m_role (id TEXT, application TEXT, name TEXT, PRIMARY KEY (id, application))",
    """CREATE TABLE tb_m_function (
        id TEXT, application TEXT, description TEXT, PRIMARY KEY (id, application)
    )""",
    """CREATE TABLE tb_m_authorization (
        username TEXT, application TEXT, role TEXT, function_id TEXT,
        created_dt TIMESTAMP, changed_dt TIMESTAMP
    )""",
]

LEGACY_ROLE_DDL = [
    """CREATE TABLE tb_m_role_header (
        application_id TEXT, username TEXT, role_id TEXT, role_name TEXT
    )""",
    "CREATE TABLE tb_m_user (username TEXT, reg_no TEXT)",
    "CREATE TABLE tb_m_role_detail (role_id TEXT, screen_id TEXT)",
]


class Stores:
    """Canonical and source stores plus seeding helpers."""

    def __init__(self, canonical: SqliteDatabase, sources: Dict[str, SqliteDatabase]):
        self.canonical = canonical
        self.sources = sources

    @property
    def sc(self) -> SqliteDatabase:
        return self.sources["SC"]

    @property
    def ldap(self) -> SqliteDatabase:
        return self.sources["LDAP"]

    @property
    def tmmin(self) -> SqliteDatabase:
        return self.sources["TMMIN"]

    # Canonical store ------------------------------------------------------

    async def add_employees(self, *subject_ids: str) -> None:
        for subject_id in subject_ids:
            await self.canonical.execute(
                "INSERT INTO employee (subject_id, username) VALUES ($1, $2)",
                subject_id, subject_id.lower(),
            )

    async def add_grant(
        self,
        system: str,
        subject_id: str,
        role_id: str,
        created_by: str = "SC_SYNC",
        created_at: datetime = datetime(2026, 1, 1),
    ) -> None:
        await self.canonical.execute(
            """INSERT INTO user_role (system, subject_id, username, role_id, role_name,
                                      created_by, created_at)
               VALUES ($1, $2, $3, $4, $5, $6, $7)""",
            system, subject_id, subject_id.lower(), role_id, f"{role_id} name",
            created_by, created_at,
        )

    async def add_staged_grant(
        self,
        table: str,
        system: str,
        subject_id: str,
        role_id: str,
        created_at: datetime = AS_OF,
        changed_at: Optional[datetime] = None,
        username: Optional[str] = None,
        role_name: Optional[str] = None,
        created_by: str = "SC_SYNC",
    ) -> None:
        await self.canonical.execute(
            f"""INSERT INTO {table} (system, subject_id, username, role_id, role_name,
                                     created_by, created_at, changed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)""",
            system, subject_id, username or subject_id.lower(), role_id,
            role_name or f"{role_id} name", created_by, created_at, changed_at,
        )

    async def add_staged_role_function(
        self,
        table: str,
        system: str,
        role_id: str,
        screen_id: str,
        created_at: datetime = AS_OF,
        changed_at: Optional[datetime] = None,
        screen_name: Optional[str] = None,
        created_by: str = "SC_SYNC",
    ) -> None:
        await self.canonical.execute(
            f"""INSERT INTO {table} (system, role_id, role_name, screen_id, screen_name,
                                     created_by, created_at, changed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)""",
            system, role_id, f"{role_id} name", screen_id, screen_name or screen_id,
            created_by, created_at, changed_at,
        )

    async def add_review(
        self,
        uar_id: str,
        subject_id: str,
        role_id: str,
        system: str,
        status: str = "R",
        remediated: Optional[bool] = None,
        table: str = "uar_division_user",
    ) -> None:
        await self.canonical.execute(
            f"""INSERT INTO {table} (uar_id, subject_id, username, role_id, system,
                                     division_id, approval_status, remediated)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)""",
            uar_id, subject_id, subject_id.lower(), role_id, system, "DIV1", status, remediated,
        )

    async def add_termination(self, subject_id: str, valid_to: date, remediated: bool = False) -> None:
        await self.canonical.execute(
            "INSERT INTO employee_termination (subject_id, valid_to, remediated) VALUES ($1, $2, $3)",
            subject_id, valid_to, remediated,
        )

    async def count(self, table: str, where: str = "1 = 1", *args, db=None) -> int:
        rows = await (db or self.canonical).fetch(
            f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", *args
        )
        return rows[0]["cnt"]

    async def grant_keys(self, system: Optional[str] = None) -> Set[Tuple[str, str, str]]:
        if system:
            rows = await self.canonical.fetch(
                "SELECT system, subject_id, role_id FROM user_role WHERE system = $1", system
            )
        else:
            rows = await self.canonical.fetch("SELECT system, subject_id, role_id FROM user_role")
        return {(r["system"], r["subject_id"], r["role_id"]) for r in rows}

    # Security administration source --------------------------------------

    async def add_sc_authorization(
        self,
        username: str,
        reg_no: str,
        application: str,
        role: str,
        function_id: str = "F1",
        created_dt: Optional[datetime] = None,
        changed_dt: Optional[datetime] = None,
    ) -> None:
        app_id = f"APP_{application}"
        await self.sc.execute(
            "INSERT OR IGNORE INTO tb_m_application (id, name) VALUES ($1, $2)", app_id, application
        )
        await self.sc.execute(
            "INSERT OR IGNORE INTO tb_m_user (username, reg_no, company) VALUES ($1, $2, $3)",
            username, reg_no, 1000,
        )
        await self.sc.execute(
            "INSERT OR IGNORE INTO tb_m_role (id, application, name) VALUES ($1, $2, $3)",
            role, app_id, f"{role} name",
        )
        await self.sc.execute(
            "INSERT OR IGNORE INTO tb_m_function (id, application, description) VALUES ($1, $2, $3)",
            function_id, app_id, f"Screen {function_id}",
        )
        await self.sc.execute(
            """INSERT INTO tb_m_authorization (username, application, role, function_id,
                                               created_dt, changed_dt)
               VALUES ($1, $2, $3, $4, $5, $6)""",
            username, app_id, role, function_id, created_dt, changed_dt,
        )


@asynccontextmanager
async def _open_stores():
    canonical = SqliteDatabase(":memory:", name="canonical")
    sources = {
        "LDAP": SqliteDatabase(":memory:", name="ldap"),
        "SC": SqliteDatabase(":memory:", name="sc"),
        "TMMIN": SqliteDatabase(":memory:", name="tmmin"),
    }
    ddl = {"LDAP": DIRECTORY_DDL, "SC": SECURITY_ADMIN_DDL, "TMMIN": LEGACY_ROLE_DDL}

    await canonical.connect()
    for name, db in sources.items():
        await db.connect()
        for statement in ddl[name]:
            await db.execute(statement)
    await create_canonical_schema(canonical)

    try:
        yield Stores(canonical, sources)
    finally:
        await canonical.close()
        for db in sources.values():
            await db.close()


@pytest.fixture
def open_stores():
    """Return an async context manager opening fresh seeded-schema stores."""
    return _open_stores


@pytest.fixture
def as_of():
    """Fixed run timestamp."""
    return AS_OF
