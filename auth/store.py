"""
auth/store.py -- SQLAlchemy Core persistence layer for credential entities.

Pattern: Repository + Data Mapper. CredentialStore is the repository the
authenticators talk to; the _row_to_* / _load_* helpers are the mappers.
Authenticator code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  API keys: only the SHA3-256 digest of the secret is stored. The raw key is
  returned once from create_api_key() / regenerate_api_key() and is then
  unrecoverable. Regeneration overwrites the digest in place -- there is no
  window in which the old and new secrets are both valid.

Principal kinds:
  Managed, directory (LDAP) and OIDC users live in separate tables. Direct
  permission grants and team memberships for all three share one edge table
  each, keyed by (user_kind, user_id).

Team synchronization:
  synchronize_oidc_team_membership() is a full reconciliation executed in one
  transaction: memberships not implied by the asserted groups are removed
  (including teams with no group mapping at all), missing ones are added.

Every method may raise sqlalchemy.exc.SQLAlchemyError; authenticators map that
to CauseType.OTHER.

Layer rule: imports auth.models, the pure key codec in auth.api_keys and core/ only.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional, Union

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth import api_keys
from auth.models import ApiKey, LdapUser, ManagedUser, OidcGroup, OidcUser, Permission, Team, UserPrincipal
from core.config import get_settings

if TYPE_CHECKING:
    from core.config import Settings

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'gatekeeper_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("description", Text),
)

_teams = Table(
    "teams",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
)

_team_permissions = Table(
    "team_permissions",
    _metadata,
    Column("team_id", Integer, ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

_managed_users = Table(
    "managed_users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("password", Text, nullable=False),  # bcrypt digest
    Column("email", String(255)),
    Column("fullname", String(255)),
    Column("suspended", Boolean, nullable=False, default=False),
    Column("force_password_change", Boolean, nullable=False, default=False),
    Column("non_expiry_password", Boolean, nullable=False, default=False),
    Column("last_password_change", String(32)),
)

_ldap_users = Table(
    "ldap_users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("dn", Text),
    Column("email", String(255)),
)

_oidc_users = Table(
    "oidc_users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("subject_identifier", String(255)),
    Column("email", String(255)),
)

# user_kind is one of "managed", "ldap", "oidc".
_user_permissions = Table(
    "user_permissions",
    _metadata,
    Column("user_kind", String(10), primary_key=True),
    Column("user_id", Integer, primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)

_team_memberships = Table(
    "team_memberships",
    _metadata,
    Column("user_kind", String(10), primary_key=True),
    Column("user_id", Integer, primary_key=True),
    Column("team_id", Integer, ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("public_id", String(api_keys.PUBLIC_ID_LENGTH), unique=True),  # NULL for legacy keys
    Column("secret_hash", String(64), nullable=False, unique=True),  # SHA3-256 hex
    Column("is_legacy", Boolean, nullable=False, default=False),
    Column("comment", String(255)),
    Column("created", String(32), nullable=False),
    Column("last_used", String(32)),
)

_api_key_teams = Table(
    "api_key_teams",
    _metadata,
    Column("api_key_id", Integer, ForeignKey("api_keys.id", ondelete="CASCADE"), primary_key=True),
    Column("team_id", Integer, ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True),
)

_oidc_groups = Table(
    "oidc_groups",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(1024), nullable=False, unique=True),
)

_mapped_oidc_groups = Table(
    "mapped_oidc_groups",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("team_id", Integer, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False),
    Column("group_id", Integer, ForeignKey("oidc_groups.id", ondelete="CASCADE"), nullable=False),
    UniqueConstraint("team_id", "group_id"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_USER_TABLES = {"managed": _managed_users, "ldap": _ldap_users, "oidc": _oidc_users}


def _user_kind(user: UserPrincipal) -> str:
    if isinstance(user, ManagedUser):
        return "managed"
    if isinstance(user, LdapUser):
        return "ldap"
    if isinstance(user, OidcUser):
        return "oidc"
    raise TypeError(f"Unsupported user principal: {type(user).__name__}")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, teams, permissions, API keys and OIDC group mappings.

    Usage:
        store = CredentialStore()
        team = store.create_team("Automation")
        key, raw_key = store.create_api_key(team)     # raw_key shown once
        user = store.get_oidc_user("alice")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Permissions and teams
    # ------------------------------------------------------------------

    def create_permission(self, name: str, description: Optional[str] = None) -> Permission:
        """Insert a permission. Raises IntegrityError if the name already exists."""
        with self.engine.begin() as conn:
            result = conn.execute(_permissions.insert().values(name=name, description=description))
        return Permission(name=name, description=description, id=result.inserted_primary_key[0])

    def get_permission(self, name: str) -> Optional[Permission]:
        with self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def create_team(self, name: str) -> Team:
        with self.engine.begin() as conn:
            result = conn.execute(_teams.insert().values(name=name))
        return Team(name=name, id=result.inserted_primary_key[0])

    def get_teams_by_name(self, names: Iterable[str]) -> list[Team]:
        """Return the teams with the given names. Unknown names are skipped."""
        names = list(names)
        if not names:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(_teams.select().where(_teams.c.name.in_(names)).order_by(_teams.c.name)).fetchall()
            return [_load_team(conn, r) for r in rows]

    def get_teams_by_group_mapping(self, group_names: Iterable[str]) -> list[Team]:
        """Return every team mapped to at least one of the given OIDC group names."""
        group_names = list(group_names)
        if not group_names:
            return []
        with self.engine.connect() as conn:
            team_ids = _mapped_team_ids(conn, group_names)
            if not team_ids:
                return []
            rows = conn.execute(_teams.select().where(_teams.c.id.in_(team_ids)).order_by(_teams.c.name)).fetchall()
            return [_load_team(conn, r) for r in rows]

    def add_permission_to_team(self, team: Team, permission_name: str) -> Team:
        with self.engine.begin() as conn:
            permission_id = _permission_id(conn, permission_name)
            exists = conn.execute(
                select(_team_permissions.c.team_id).where(
                    (_team_permissions.c.team_id == team.id) & (_team_permissions.c.permission_id == permission_id)
                )
            ).first()
            if exists is None:
                conn.execute(_team_permissions.insert().values(team_id=team.id, permission_id=permission_id))
            row = conn.execute(_teams.select().where(_teams.c.id == team.id)).fetchone()
            return _load_team(conn, row)

    def get_permissions_for_teams(self, teams: Iterable[Team]) -> list[Permission]:
        """Union of the permissions of the given teams, deduplicated, ordered by name."""
        team_ids = [t.id for t in teams if t.id is not None]
        if not team_ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_permissions)
                .distinct()
                .join(_team_permissions, _team_permissions.c.permission_id == _permissions.c.id)
                .where(_team_permissions.c.team_id.in_(team_ids))
                .order_by(_permissions.c.name)
            ).fetchall()
        return [_row_to_permission(r) for r in rows]

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_managed_user(self, user: ManagedUser) -> ManagedUser:
        """Insert a managed user. user.password must already be a digest."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _managed_users.insert().values(
                    username=user.username,
                    password=user.password,
                    email=user.email,
                    fullname=user.fullname,
                    suspended=user.suspended,
                    force_password_change=user.force_password_change,
                    non_expiry_password=user.non_expiry_password,
                    last_password_change=user.last_password_change or _now_iso(),
                )
            )
            return self._reload(conn, "managed", result.inserted_primary_key[0])

    def update_managed_user(self, user: ManagedUser, **fields) -> Optional[ManagedUser]:
        """Update mutable fields (password, suspended, force_password_change, email, fullname)."""
        with self.engine.begin() as conn:
            conn.execute(_managed_users.update().where(_managed_users.c.id == user.id).values(**fields))
            return self._reload(conn, "managed", user.id)

    def get_managed_user(self, username: str) -> Optional[ManagedUser]:
        """Look up a managed user by exact username. Returns None if not found."""
        return self._get_user("managed", username)

    def create_ldap_user(self, user: LdapUser) -> LdapUser:
        with self.engine.begin() as conn:
            result = conn.execute(_ldap_users.insert().values(username=user.username, dn=user.dn, email=user.email))
            return self._reload(conn, "ldap", result.inserted_primary_key[0])

    def get_ldap_user(self, username: str) -> Optional[LdapUser]:
        """Look up a directory-backed user by username. Returns None if not found."""
        return self._get_user("ldap", username)

    def create_oidc_user(self, user: OidcUser) -> OidcUser:
        with self.engine.begin() as conn:
            result = conn.execute(
                _oidc_users.insert().values(
                    username=user.username,
                    subject_identifier=user.subject_identifier,
                    email=user.email,
                )
            )
            return self._reload(conn, "oidc", result.inserted_primary_key[0])

    def get_oidc_user(self, username: str) -> Optional[OidcUser]:
        """Look up an OIDC user by username. Returns None if not found."""
        return self._get_user("oidc", username)

    def update_oidc_user(self, user: OidcUser) -> OidcUser:
        """Persist subject_identifier and email of an existing OIDC user."""
        with self.engine.begin() as conn:
            conn.execute(
                _oidc_users.update()
                .where(_oidc_users.c.id == user.id)
                .values(subject_identifier=user.subject_identifier, email=user.email)
            )
            return self._reload(conn, "oidc", user.id)

    def add_permission_to_user(self, user: UserPrincipal, permission_name: str) -> UserPrincipal:
        kind = _user_kind(user)
        with self.engine.begin() as conn:
            permission_id = _permission_id(conn, permission_name)
            exists = conn.execute(
                select(_user_permissions.c.user_id).where(
                    (_user_permissions.c.user_kind == kind)
                    & (_user_permissions.c.user_id == user.id)
                    & (_user_permissions.c.permission_id == permission_id)
                )
            ).first()
            if exists is None:
                conn.execute(
                    _user_permissions.insert().values(user_kind=kind, user_id=user.id, permission_id=permission_id)
                )
            return self._reload(conn, kind, user.id)

    def get_permissions_for_user(self, user: UserPrincipal) -> list[Permission]:
        """Permissions granted directly to the user (not via teams)."""
        with self.engine.connect() as conn:
            return _load_user_permissions(conn, _user_kind(user), user.id)

    def add_user_to_team(self, user: UserPrincipal, team: Team) -> UserPrincipal:
        kind = _user_kind(user)
        with self.engine.begin() as conn:
            _add_membership(conn, kind, user.id, team.id)
            return self._reload(conn, kind, user.id)

    def remove_user_from_team(self, user: UserPrincipal, team: Team) -> UserPrincipal:
        kind = _user_kind(user)
        with self.engine.begin() as conn:
            conn.execute(
                _team_memberships.delete().where(
                    (_team_memberships.c.user_kind == kind)
                    & (_team_memberships.c.user_id == user.id)
                    & (_team_memberships.c.team_id == team.id)
                )
            )
            return self._reload(conn, kind, user.id)

    # ------------------------------------------------------------------
    # OIDC groups and team synchronization
    # ------------------------------------------------------------------

    def create_oidc_group(self, name: str) -> OidcGroup:
        with self.engine.begin() as conn:
            result = conn.execute(_oidc_groups.insert().values(name=name))
        return OidcGroup(name=name, id=result.inserted_primary_key[0])

    def map_oidc_group(self, team: Team, group: OidcGroup) -> None:
        """Declare that members of the external group belong to team."""
        with self.engine.begin() as conn:
            conn.execute(_mapped_oidc_groups.insert().values(team_id=team.id, group_id=group.id))

    def synchronize_oidc_team_membership(self, user: OidcUser, group_names: Optional[Iterable[str]]) -> OidcUser:
        """Reconcile the user's teams with the teams mapped from group_names.

        desired = union of the teams mapped from each asserted group name.
        Memberships outside desired are removed, including memberships of
        teams that have no group mapping at all. Memberships in desired but
        missing are added. Unknown group names are ignored.
        """
        group_names = list(group_names or [])
        with self.engine.begin() as conn:
            current = set(
                conn.execute(
                    select(_team_memberships.c.team_id).where(
                        (_team_memberships.c.user_kind == "oidc") & (_team_memberships.c.user_id == user.id)
                    )
                ).scalars()
            )
            desired = set(_mapped_team_ids(conn, group_names)) if group_names else set()
            stale = current - desired
            if stale:
                conn.execute(
                    _team_memberships.delete().where(
                        (_team_memberships.c.user_kind == "oidc")
                        & (_team_memberships.c.user_id == user.id)
                        & (_team_memberships.c.team_id.in_(stale))
                    )
                )
            for team_id in sorted(desired - current):
                _add_membership(conn, "oidc", user.id, team_id)
            return self._reload(conn, "oidc", user.id)

    def add_oidc_user_to_teams(self, user: OidcUser, team_names: Iterable[str]) -> OidcUser:
        """Add the user to the named teams. Never removes; unknown team names are ignored."""
        team_names = list(team_names)
        with self.engine.begin() as conn:
            if team_names:
                team_ids = conn.execute(select(_teams.c.id).where(_teams.c.name.in_(team_names))).scalars().all()
                for team_id in team_ids:
                    _add_membership(conn, "oidc", user.id, team_id)
            return self._reload(conn, "oidc", user.id)

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, team: Team, comment: Optional[str] = None) -> tuple[ApiKey, str]:
        """Create a key owned by team. Returns (record, raw key); the raw key is not retrievable later."""
        generated = api_keys.generate(self.settings.api_key_prefix)
        with self.engine.begin() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    public_id=generated.public_id,
                    secret_hash=generated.secret_hash,
                    is_legacy=False,
                    comment=comment,
                    created=_now_iso(),
                )
            )
            key_id = result.inserted_primary_key[0]
            conn.execute(_api_key_teams.insert().values(api_key_id=key_id, team_id=team.id))
            return self._load_api_key(conn, key_id), generated.key

    def import_legacy_api_key(self, raw_key: str, team: Team, comment: Optional[str] = None) -> ApiKey:
        """Register a pre-existing legacy key (no public id) by the digest of its body."""
        decoded = api_keys.decode(raw_key, self.settings.api_key_prefix, prefix_required=False)
        if not decoded.legacy:
            raise ValueError("Key is not in the legacy format")
        with self.engine.begin() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    public_id=None,
                    secret_hash=decoded.secret_hash,
                    is_legacy=True,
                    comment=comment,
                    created=_now_iso(),
                )
            )
            key_id = result.inserted_primary_key[0]
            conn.execute(_api_key_teams.insert().values(api_key_id=key_id, team_id=team.id))
            return self._load_api_key(conn, key_id)

    def regenerate_api_key(self, api_key: ApiKey) -> tuple[ApiKey, str]:
        """Replace public id and secret of an existing key in one statement.

        The old digest is overwritten, so the previous raw key stops working
        immediately. A regenerated legacy key becomes a current-format key.
        """
        generated = api_keys.generate(self.settings.api_key_prefix)
        with self.engine.begin() as conn:
            conn.execute(
                _api_keys.update()
                .where(_api_keys.c.id == api_key.id)
                .values(public_id=generated.public_id, secret_hash=generated.secret_hash, is_legacy=False)
            )
            return self._load_api_key(conn, api_key.id), generated.key

    def get_api_key_by_public_id(self, public_id: str) -> Optional[ApiKey]:
        """Look up a current-format key by its public id. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.public_id == public_id) & (_api_keys.c.is_legacy.is_(False)))
            ).fetchone()
            return self._row_to_api_key(conn, row) if row is not None else None

    def get_legacy_api_key_by_digest(self, digest: str) -> Optional[ApiKey]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _api_keys.select().where((_api_keys.c.secret_hash == digest) & (_api_keys.c.is_legacy.is_(True)))
            ).fetchone()
            return self._row_to_api_key(conn, row) if row is not None else None

    def update_api_key_last_used(self, key_id: int) -> None:
        """Stamp last_used on a key after each successful API authentication."""
        with self.engine.begin() as conn:
            conn.execute(_api_keys.update().where(_api_keys.c.id == key_id).values(last_used=_now_iso()))

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal loaders
    # ------------------------------------------------------------------

    def _get_user(self, kind: str, username: str):
        table = _USER_TABLES[kind]
        with self.engine.connect() as conn:
            row = conn.execute(table.select().where(table.c.username == username)).fetchone()
            return _row_to_user(conn, kind, row) if row is not None else None

    def _reload(self, conn: Connection, kind: str, user_id: int):
        table = _USER_TABLES[kind]
        row = conn.execute(table.select().where(table.c.id == user_id)).fetchone()
        return _row_to_user(conn, kind, row) if row is not None else None

    def _load_api_key(self, conn: Connection, key_id: int) -> ApiKey:
        row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return self._row_to_api_key(conn, row)

    def _row_to_api_key(self, conn: Connection, row) -> ApiKey:
        team_rows = conn.execute(
            select(_teams)
            .join(_api_key_teams, _api_key_teams.c.team_id == _teams.c.id)
            .where(_api_key_teams.c.api_key_id == row.id)
            .order_by(_teams.c.name)
        ).fetchall()
        return ApiKey(
            id=row.id,
            public_id=row.public_id,
            secret_hash=row.secret_hash,
            legacy=bool(row.is_legacy),
            comment=row.comment,
            created=row.created,
            last_used=row.last_used,
            teams=[_load_team(conn, t) for t in team_rows],
            masked_key=api_keys.mask(row.public_id, self.settings.api_key_prefix),
        )


# ---------------------------------------------------------------------------
# Query helpers (shared by several repository methods)
# ---------------------------------------------------------------------------


def _permission_id(conn: Connection, name: str) -> int:
    permission_id = conn.execute(select(_permissions.c.id).where(_permissions.c.name == name)).scalar()
    if permission_id is None:
        raise ValueError(f"Unknown permission: {name!r}")
    return permission_id


def _mapped_team_ids(conn: Connection, group_names: list[str]) -> list[int]:
    return list(
        conn.execute(
            select(_mapped_oidc_groups.c.team_id)
            .distinct()
            .join(_oidc_groups, _oidc_groups.c.id == _mapped_oidc_groups.c.group_id)
            .where(_oidc_groups.c.name.in_(group_names))
        ).scalars()
    )


def _add_membership(conn: Connection, kind: str, user_id: int, team_id: int) -> None:
    exists = conn.execute(
        select(_team_memberships.c.team_id).where(
            (_team_memberships.c.user_kind == kind)
            & (_team_memberships.c.user_id == user_id)
            & (_team_memberships.c.team_id == team_id)
        )
    ).first()
    if exists is None:
        conn.execute(_team_memberships.insert().values(user_kind=kind, user_id=user_id, team_id=team_id))


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_permission(row) -> Permission:
    return Permission(id=row.id, name=row.name, description=row.description)


def _load_team(conn: Connection, row) -> Team:
    perm_rows = conn.execute(
        select(_permissions)
        .join(_team_permissions, _team_permissions.c.permission_id == _permissions.c.id)
        .where(_team_permissions.c.team_id == row.id)
        .order_by(_permissions.c.name)
    ).fetchall()
    return Team(id=row.id, name=row.name, permissions=[_row_to_permission(p) for p in perm_rows])


def _load_user_permissions(conn: Connection, kind: str, user_id: int) -> list[Permission]:
    rows = conn.execute(
        select(_permissions)
        .join(_user_permissions, _user_permissions.c.permission_id == _permissions.c.id)
        .where((_user_permissions.c.user_kind == kind) & (_user_permissions.c.user_id == user_id))
        .order_by(_permissions.c.name)
    ).fetchall()
    return [_row_to_permission(r) for r in rows]


def _load_user_teams(conn: Connection, kind: str, user_id: int) -> list[Team]:
    rows = conn.execute(
        select(_teams)
        .join(_team_memberships, _team_memberships.c.team_id == _teams.c.id)
        .where((_team_memberships.c.user_kind == kind) & (_team_memberships.c.user_id == user_id))
        .order_by(_teams.c.name)
    ).fetchall()
    return [_load_team(conn, r) for r in rows]


def _row_to_user(conn: Connection, kind: str, row) -> Union[ManagedUser, LdapUser, OidcUser]:
    permissions = _load_user_permissions(conn, kind, row.id)
    teams = _load_user_teams(conn, kind, row.id)
    if kind == "managed":
        return ManagedUser(
            id=row.id,
            username=row.username,
            password=row.password,
            email=row.email,
            fullname=row.fullname,
            suspended=bool(row.suspended),
            force_password_change=bool(row.force_password_change),
            non_expiry_password=bool(row.non_expiry_password),
            last_password_change=row.last_password_change,
            permissions=permissions,
            teams=teams,
        )
    if kind == "ldap":
        return LdapUser(
            id=row.id, username=row.username, dn=row.dn, email=row.email, permissions=permissions, teams=teams
        )
    return OidcUser(
        id=row.id,
        username=row.username,
        subject_identifier=row.subject_identifier,
        email=row.email,
        permissions=permissions,
        teams=teams,
    )
