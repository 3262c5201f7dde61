"""
Canonical store DDL.

Portable between PostgreSQL and SQLite. Tables:

- employee: live subject registry
- user_role / role_function: canonical grants and role-function mappings
- uar_division_user / uar_system_owner: access review decisions
- employee_termination: HR terminations awaiting remediation
- stg_<source>_user_role / stg_<source>_role_function: per-source staging
"""
from typing import Iterable, List

import structlog

from authz_sync.clients.database import Database
from authz_sync.core.sources import SOURCES, SourceAdapter

logger = structlog.get_logger(__name__)

REVIEW_TABLES = ("uar_division_user", "uar_system_owner")

CANONICAL_DDL = [
    """
    CREATE TABLE IF NOT EXISTS employee (
        subject_id VARCHAR(20) PRIMARY KEY,
        username VARCHAR(100),
        full_name VARCHAR(200),
        company_code VARCHAR(50),
        valid_to DATE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        system VARCHAR(100) NOT NULL,
        subject_id VARCHAR(20) NOT NULL,
        username VARCHAR(100),
        company_code VARCHAR(50),
        role_id VARCHAR(100) NOT NULL,
        role_name VARCHAR(200),
        created_by VARCHAR(50) NOT NULL,
        created_at TIMESTAMP NOT NULL,
        changed_by VARCHAR(50),
        changed_at TIMESTAMP,
        PRIMARY KEY (system, subject_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_function (
        system VARCHAR(100) NOT NULL,
        role_id VARCHAR(100) NOT NULL,
        role_name VARCHAR(200),
        screen_id VARCHAR(100) NOT NULL,
        screen_name VARCHAR(200),
        created_by VARCHAR(50) NOT NULL,
        created_at TIMESTAMP NOT NULL,
        changed_by VARCHAR(50),
        changed_at TIMESTAMP,
        PRIMARY KEY (system, role_id, screen_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS employee_termination (
        subject_id VARCHAR(20) NOT NULL,
        valid_to DATE NOT NULL,
        remediated BOOLEAN NOT NULL DEFAULT FALSE,
        remediated_at TIMESTAMP,
        PRIMARY KEY (subject_id, valid_to)
    )
    """,
] + [
    f"""
    CREATE TABLE IF NOT EXISTS {table} (
        uar_id VARCHAR(50) NOT NULL,
        subject_id VARCHAR(20) NOT NULL,
        username VARCHAR(100),
        role_id VARCHAR(100) NOT NULL,
        system VARCHAR(100) NOT NULL,
        division_id VARCHAR(50),
        approval_status CHAR(1),
        remediated BOOLEAN,
        remediated_at TIMESTAMP,
        PRIMARY KEY (uar_id, subject_id, role_id, system)
    )
    """
    for table in REVIEW_TABLES
]


def staging_ddl(adapter: SourceAdapter) -> List[str]:
    """Staging tables for one source. No keys: duplicates are expected."""
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {adapter.staging_grant_table} (
            system VARCHAR(100) NOT NULL,
            subject_id VARCHAR(20) NOT NULL,
            username VARCHAR(100),
            company_code VARCHAR(50),
            role_id VARCHAR(100) NOT NULL,
            role_name VARCHAR(200),
            created_by VARCHAR(50) NOT NULL,
            created_at TIMESTAMP NOT NULL,
            changed_by VARCHAR(50),
            changed_at TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS {adapter.staging_role_function_table} (
            system VARCHAR(100) NOT NULL,
            role_id VARCHAR(100) NOT NULL,
            role_name VARCHAR(200),
            screen_id VARCHAR(100) NOT NULL,
            screen_name VARCHAR(200),
            created_by VARCHAR(50) NOT NULL,
            created_at TIMESTAMP NOT NULL,
            changed_by VARCHAR(50),
            changed_at TIMESTAMP
        )
        """,
    ]


async def create_canonical_schema(
    db: Database,
    sources: Iterable[SourceAdapter] = SOURCES.values(),
) -> int:
    """
    Create canonical and staging tables if they don't exist.

    Args:
        db: Canonical store handle
        sources: Adapters whose staging tables to create

    Returns:
        Number of statements executed
    """
    statements = list(CANONICAL_DDL)
    for adapter in sources:
        statements.extend(staging_ddl(adapter))

    for statement in statements:
        await db.execute(statement)

    logger.info("canonical_schema_ready", statements=len(statements))
    return len(statements)
