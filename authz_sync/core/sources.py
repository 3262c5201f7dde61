"""
Source system adapters.

One adapter per external system of record. An adapter owns everything
that differs between sources: the read-only extract queries against the
source's native schema, the column mapping into SourceGrant/RoleFunction,
the staging tables it loads, and the actor tag stamped on the rows it
owns in the canonical store.

- DirectoryAdapter (LDAP): directory service
- SecurityAdminAdapter (SC): central security administration, also the
  store remediation deletes from directly
- LegacyRoleAdapter (TMMIN): legacy role system
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog

from authz_sync.clients.database import values_table
from authz_sync.models import RoleFunction, SourceGrant

logger = structlog.get_logger(__name__)


def _text(value: Any) -> Optional[str]:
    """Normalize a source column to stripped text."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class SourceAdapter:
    """Query set and column mapping for one source system."""

    name: str = ""
    description: str = ""
    grant_sql: str = ""
    role_function_sql: str = ""

    @property
    def actor(self) -> str:
        """Synthetic actor id stamped on staging and canonical rows."""
        return f"{self.name}_SYNC"

    @property
    def staging_grant_table(self) -> str:
        return f"stg_{self.name.lower()}_user_role"

    @property
    def staging_role_function_table(self) -> str:
        return f"stg_{self.name.lower()}_role_function"

    def grant_params(self, as_of: datetime) -> Tuple:
        """Bind parameters for ``grant_sql``."""
        return ()

    def role_function_params(self, as_of: datetime) -> Tuple:
        """Bind parameters for ``role_function_sql``."""
        return ()

    def map_grant(self, row: Dict[str, Any]) -> SourceGrant:
        raise NotImplementedError

    def map_role_function(self, row: Dict[str, Any]) -> RoleFunction:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class DirectoryAdapter(SourceAdapter):
    """Directory service (LDAP) authorization mapping."""

    name = "LDAP"
    description = "Directory service authorization mapping"

    # Accounts past their expiration date are not extracted.
    grant_sql = """
        SELECT s.system_name, m.username, e.no_reg, c.company_code,
               m.role_id, r.role_name
        FROM tb_m_authorization_mapping m
        JOIN tb_m_role r ON m.role_id = r.role_id AND r.system_id = m.system_id
        JOIN tb_m_employee e ON m.username = e.username
        JOIN tb_m_system s ON s.system_id = m.system_id
        JOIN tb_m_company_of_origin c ON c.company_id = e.company_id
        WHERE e.user_expiration_date >= $1
        ORDER BY s.system_name, m.role_id, m.username
    """

    role_function_sql = """
        SELECT DISTINCT s.system_name, r.role_id, r.role_name,
               d.screen_id, c.screen_name
        FROM tb_m_role r
        JOIN tb_m_system s ON s.system_id = r.system_id
        JOIN tb_m_authorization_detail d
          ON d.system_id = r.system_id AND d.role_id = r.role_id
        JOIN tb_m_screen c ON d.screen_id = c.screen_id
        WHERE d.screen_auth = '1'
        ORDER BY s.system_name, r.role_id, d.screen_id
    """

    def grant_params(self, as_of: datetime) -> Tuple:
        return (as_of.date(),)

    def map_grant(self, row: Dict[str, Any]) -> SourceGrant:
        return SourceGrant(
            system=_text(row["system_name"]),
            subject_id=_text(row["no_reg"]),
            username=_text(row["username"]),
            role_id=_text(row["role_id"]),
            role_name=_text(row["role_name"]),
            company_code=_text(row["company_code"]),
        )

    def map_role_function(self, row: Dict[str, Any]) -> RoleFunction:
        return RoleFunction(
            system=_text(row["system_name"]),
            role_id=_text(row["role_id"]),
            role_name=_text(row["role_name"]),
            screen_id=_text(row["screen_id"]),
            screen_name=_text(row["screen_name"]),
        )


class SecurityAdminAdapter(SourceAdapter):
    """
    Central security administration (SC).

    Authorization rows are stored per (user, application, role, function),
    so the grant extract returns one row per function and relies on
    staging dedup to collapse them. Remediation also deletes from this
    store directly because it is authoritative for the systems it manages.
    """

    name = "SC"
    description = "Central security administration"

    grant_sql = """
        SELECT app.name AS application_name, a.username, u.reg_no,
               CAST(u.company AS TEXT) AS company_code,
               a.role AS role_id, r.name AS role_name,
               a.created_dt, a.changed_dt
        FROM tb_m_authorization a
        JOIN tb_m_user u ON u.username = a.username
        LEFT JOIN tb_m_role r ON r.id = a.role AND r.application = a.application
        JOIN tb_m_application app ON a.application = app.id
    """

    role_function_sql = """
        SELECT DISTINCT app.name AS application_name, a.role AS role_id,
               r.name AS role_name, a.function_id AS screen_id,
               f.description AS screen_name
        FROM tb_m_authorization a
        JOIN tb_m_role r ON a.role = r.id AND r.application = a.application
        JOIN tb_m_function f ON a.function_id = f.id AND f.application = a.application
        JOIN tb_m_application app ON a.application = app.id
    """

    # Authorization rows in SC for (reg_no, role, application name) keys,
    # with the key table spliced in as ``{keys}``.
    _MATCH_GRANTS = """
        FROM tb_m_authorization a
        JOIN tb_m_user u ON u.username = a.username
        JOIN tb_m_application app ON app.id = a.application
        JOIN {keys} AS k
          ON k.column1 = u.reg_no AND k.column2 = a.role AND k.column3 = app.name
    """

    _MATCH_SUBJECTS = """
        FROM tb_m_authorization a
        JOIN tb_m_user u ON u.username = a.username
        JOIN {keys} AS k ON k.column1 = u.reg_no
    """

    def map_grant(self, row: Dict[str, Any]) -> SourceGrant:
        return SourceGrant(
            system=_text(row["application_name"]),
            subject_id=_text(row["reg_no"]),
            username=_text(row["username"]),
            role_id=_text(row["role_id"]),
            role_name=_text(row["role_name"]),
            company_code=_text(row["company_code"]),
            created_at=row.get("created_dt"),
            changed_at=row.get("changed_dt"),
        )

    def map_role_function(self, row: Dict[str, Any]) -> RoleFunction:
        return RoleFunction(
            system=_text(row["application_name"]),
            role_id=_text(row["role_id"]),
            role_name=_text(row["role_name"]),
            screen_id=_text(row["screen_id"]),
            screen_name=_text(row["screen_name"]),
        )

    def matched_grants_query(self, keys: Sequence[Tuple[str, str, str]]) -> Tuple[str, List[Any]]:
        """SELECT the (subject, role, system) keys present in SC."""
        table, args = values_table(keys)
        sql = (
            "SELECT DISTINCT u.reg_no AS subject_id, a.role AS role_id, app.name AS system "
            + self._MATCH_GRANTS.format(keys=table)
        )
        return sql, args

    def revoke_grants_query(self, keys: Sequence[Tuple[str, str, str]]) -> Tuple[str, List[Any]]:
        """DELETE authorization rows for (subject, role, system) keys."""
        table, args = values_table(keys)
        sql = f"""
            DELETE FROM tb_m_authorization
            WHERE EXISTS (
                SELECT 1
                FROM tb_m_user u
                JOIN tb_m_application app ON app.id = tb_m_authorization.application
                JOIN {table} AS k
                  ON k.column1 = u.reg_no
                 AND k.column2 = tb_m_authorization.role
                 AND k.column3 = app.name
                WHERE u.username = tb_m_authorization.username
            )
        """
        return sql, args

    def matched_subjects_query(self, subject_ids: Sequence[str]) -> Tuple[str, List[Any]]:
        """SELECT the subjects that still hold any SC authorization."""
        table, args = values_table([(s,) for s in subject_ids])
        sql = (
            "SELECT DISTINCT u.reg_no AS subject_id "
            + self._MATCH_SUBJECTS.format(keys=table)
        )
        return sql, args

    def revoke_subjects_query(self, subject_ids: Sequence[str]) -> Tuple[str, List[Any]]:
        """DELETE every authorization row held by the given subjects."""
        table, args = values_table([(s,) for s in subject_ids])
        sql = f"""
            DELETE FROM tb_m_authorization
            WHERE EXISTS (
                SELECT 1
                FROM tb_m_user u
                JOIN {table} AS k ON k.column1 = u.reg_no
                WHERE u.username = tb_m_authorization.username
            )
        """
        return sql, args


class LegacyRoleAdapter(SourceAdapter):
    """Legacy role system (TMMIN). Carries no company code or screen names."""

    name = "TMMIN"
    description = "Legacy role system"

    grant_sql = """
        SELECT h.application_id, h.username, u.reg_no, h.role_id, h.role_name
        FROM tb_m_role_header h
        JOIN tb_m_user u ON h.username = u.username
        ORDER BY h.username, h.role_id
    """

    role_function_sql = """
        SELECT DISTINCT h.application_id, h.role_id, h.role_name, d.screen_id
        FROM tb_m_role_header h
        JOIN tb_m_role_detail d ON h.role_id = d.role_id
        ORDER BY h.role_id, d.screen_id
    """

    def map_grant(self, row: Dict[str, Any]) -> SourceGrant:
        return SourceGrant(
            system=_text(row["application_id"]),
            subject_id=_text(row["reg_no"]),
            username=_text(row["username"]),
            role_id=_text(row["role_id"]),
            role_name=_text(row["role_name"]),
        )

    def map_role_function(self, row: Dict[str, Any]) -> RoleFunction:
        return RoleFunction(
            system=_text(row["application_id"]),
            role_id=_text(row["role_id"]),
            role_name=_text(row["role_name"]),
            screen_id=_text(row["screen_id"]),
        )


SOURCES: Dict[str, SourceAdapter] = {
    adapter.name: adapter
    for adapter in (DirectoryAdapter(), SecurityAdminAdapter(), LegacyRoleAdapter())
}


def get_adapter(name: str) -> SourceAdapter:
    """
    Look up a source adapter by name (case-insensitive).

    Raises:
        KeyError: if no adapter is registered under ``name``
    """
    try:
        return SOURCES[name.upper()]
    except KeyError:
        raise KeyError(f"Unknown source: {name}. Known sources: {', '.join(SOURCES)}") from None
