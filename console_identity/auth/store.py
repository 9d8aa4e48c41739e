"""SQLite-backed persistence for identities, groups, memberships and directory settings."""

from __future__ import annotations

import json
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from console_identity.config.schema import DirectoryConfig
from console_identity.db.engine import create_store_engine, session_factory, session_scope
from console_identity.db.models import DirectorySettings, Group, Identity, Membership
from console_identity.exceptions import AlreadyExists, GroupInUse, NotFound
from console_identity.utils.logger import get_logger

from .models import GroupRecord, IdentityRecord, PermissionMap

logger = get_logger(__name__)

UNSET = object()
DIRECTORY_SETTINGS_ID = 1


class IdentityStore:
    """Persistent storage for the identity core."""

    def __init__(self, db_path: Path | str = "data/console_identity.db") -> None:
        self.db_path = Path(db_path).resolve()
        self._lock = threading.RLock()
        self._engine = create_store_engine(self.db_path)
        self._session_factory = session_factory(self._engine)

    def close(self) -> None:
        """Dispose the underlying SQLAlchemy engine."""
        with self._lock:
            self._engine.dispose()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    @staticmethod
    def _identity_by_name(session, username: str) -> Identity | None:
        return session.execute(
            select(Identity).where(func.lower(Identity.username) == username.lower())
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Identity operations
    # ------------------------------------------------------------------
    def list_identities(self) -> list[IdentityRecord]:
        with self._lock, session_scope(self._session_factory) as session:
            rows = session.execute(select(Identity).order_by(Identity.username)).scalars()
            return [self._row_to_identity(row) for row in rows]

    def get_identity(self, username: str) -> IdentityRecord | None:
        """Case-insensitive lookup by username."""
        with self._lock, session_scope(self._session_factory) as session:
            row = self._identity_by_name(session, username)
            return self._row_to_identity(row) if row else None

    def get_identity_by_id(self, identity_id: int) -> IdentityRecord | None:
        with self._lock, session_scope(self._session_factory) as session:
            row = session.get(Identity, identity_id)
            return self._row_to_identity(row) if row else None

    def insert_identity(
        self,
        username: str,
        *,
        credential_hash: str | None = None,
        email: str | None = None,
        display_name: str | None = None,
        directory_managed: bool = False,
        active: bool = True,
        group_ids: Iterable[int] = (),
    ) -> IdentityRecord:
        """Create an identity and its initial memberships in one transaction."""
        try:
            with self._lock, session_scope(self._session_factory) as session:
                if self._identity_by_name(session, username) is not None:
                    raise AlreadyExists(
                        f"Identity already exists: {username}", {"username": username}
                    )
                now_ts = self._now()
                row = Identity(
                    username=username,
                    credential_hash=credential_hash,
                    email=email,
                    display_name=display_name,
                    directory_managed=directory_managed,
                    active=active,
                    created_at=now_ts,
                    updated_at=now_ts,
                )
                session.add(row)
                session.flush()
                for group_id in sorted(set(group_ids)):
                    if session.get(Group, group_id) is None:
                        raise NotFound(f"Group not found: {group_id}", {"group_id": group_id})
                    session.add(Membership(identity_id=row.id, group_id=group_id))
                identity_id = row.id
        except IntegrityError as exc:
            raise AlreadyExists(
                f"Identity already exists: {username}", {"username": username}
            ) from exc
        logger.info(
            "Identity created",
            event="store.identity_created",
            username=username,
            identity_id=identity_id,
            directory_managed=directory_managed,
        )
        result = self.get_identity_by_id(identity_id)
        if result is None:
            raise RuntimeError(f"Failed to retrieve identity after insert: {username}")
        return result

    def update_identity(
        self,
        identity_id: int,
        *,
        email: str | None | object = UNSET,
        display_name: str | None | object = UNSET,
        active: bool | None = None,
    ) -> IdentityRecord:
        with self._lock, session_scope(self._session_factory) as session:
            row = session.get(Identity, identity_id)
            if row is None:
                raise NotFound(f"Identity not found: {identity_id}", {"identity_id": identity_id})
            if email is not UNSET:
                row.email = email
            if display_name is not UNSET:
                row.display_name = display_name
            if active is not None:
                row.active = bool(active)
            row.updated_at = self._now()
            return self._row_to_identity(row)

    def stamp_last_login(self, identity_id: int, when: datetime | None = None) -> None:
        with self._lock, session_scope(self._session_factory) as session:
            row = session.get(Identity, identity_id)
            if row is None:
                raise NotFound(f"Identity not found: {identity_id}", {"identity_id": identity_id})
            row.last_login = when or self._now()

    def set_credential_hash(self, identity_id: int, credential_hash: str) -> None:
        """Persist a credential hash. Only CredentialStore calls this."""
        with self._lock, session_scope(self._session_factory) as session:
            row = session.get(Identity, identity_id)
            if row is None:
                raise NotFound(f"Identity not found: {identity_id}", {"identity_id": identity_id})
            row.credential_hash = credential_hash
            row.updated_at = self._now()

    def delete_identity(self, identity_id: int) -> bool:
        with self._lock, session_scope(self._session_factory) as session:
            session.execute(delete(Membership).where(Membership.identity_id == identity_id))
            result = session.execute(delete(Identity).where(Identity.id == identity_id))
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Group operations
    # ------------------------------------------------------------------
    def list_groups(self, *, directory_sourced: bool | None = None) -> list[GroupRecord]:
        with self._lock, session_scope(self._session_factory) as session:
            stmt = select(Group).order_by(Group.name)
            if directory_sourced is not None:
                stmt = stmt.where(Group.directory_sourced == directory_sourced)
            return [self._row_to_group(row) for row in session.execute(stmt).scalars()]

    def get_group(self, group_id: int) -> GroupRecord | None:
        with self._lock, session_scope(self._session_factory) as session:
            row = session.get(Group, group_id)
            return self._row_to_group(row) if row else None

    def get_group_by_name(self, name: str) -> GroupRecord | None:
        """Case-insensitive lookup by group name."""
        with self._lock, session_scope(self._session_factory) as session:
            row = session.execute(
                select(Group).where(func.lower(Group.name) == name.lower())
            ).scalar_one_or_none()
            return self._row_to_group(row) if row else None

    def get_groups(self, group_ids: Iterable[int]) -> list[GroupRecord]:
        ids = set(group_ids)
        if not ids:
            return []
        with self._lock, session_scope(self._session_factory) as session:
            rows = session.execute(
                select(Group).where(Group.id.in_(ids)).order_by(Group.name)
            ).scalars()
            return [self._row_to_group(row) for row in rows]

    def insert_group(
        self,
        name: str,
        *,
        description: str | None = None,
        directory_sourced: bool = False,
        directory_dn: str | None = None,
        classification: str = "system",
        permissions: PermissionMap | None = None,
    ) -> GroupRecord:
        permissions = permissions or PermissionMap()
        try:
            with self._lock, session_scope(self._session_factory) as session:
                exists = session.execute(
                    select(Group.id).where(func.lower(Group.name) == name.lower())
                ).first()
                if exists:
                    raise AlreadyExists(f"Group already exists: {name}", {"name": name})
                now_ts = self._now()
                row = Group(
                    name=name,
                    description=description,
                    directory_sourced=directory_sourced,
                    directory_dn=directory_dn,
                    classification=classification,
                    permissions_json=permissions.to_json(),
                    created_at=now_ts,
                    updated_at=now_ts,
                )
                session.add(row)
                session.flush()
                record = self._row_to_group(row)
        except IntegrityError as exc:
            raise AlreadyExists(f"Group already exists: {name}", {"name": name}) from exc
        logger.info(
            "Group created",
            event="store.group_created",
            group=name,
            group_id=record.id,
            directory_sourced=directory_sourced,
        )
        return record

    def update_group(
        self,
        group_id: int,
        *,
        description: str | None | object = UNSET,
        directory_dn: str | None | object = UNSET,
        classification: str | None = None,
        permissions: PermissionMap | None = None,
    ) -> GroupRecord:
        with self._lock, session_scope(self._session_factory) as session:
            row = session.get(Group, group_id)
            if row is None:
                raise NotFound(f"Group not found: {group_id}", {"group_id": group_id})
            if description is not UNSET:
                row.description = description
            if directory_dn is not UNSET:
                row.directory_dn = directory_dn
            if classification is not None:
                row.classification = classification
            if permissions is not None:
                row.permissions_json = permissions.to_json()
            row.updated_at = self._now()
            return self._row_to_group(row)

    def delete_group(self, group_id: int) -> bool:
        """Delete a group; refused while any membership references it."""
        with self._lock, session_scope(self._session_factory) as session:
            in_use = session.execute(
                select(func.count()).select_from(Membership).where(Membership.group_id == group_id)
            ).scalar_one()
            if in_use:
                raise GroupInUse(
                    f"Group {group_id} still has {in_use} member(s)",
                    {"group_id": group_id, "members": in_use},
                )
            result = session.execute(delete(Group).where(Group.id == group_id))
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Membership operations
    # ------------------------------------------------------------------
    def groups_for_identity(self, identity_id: int) -> list[GroupRecord]:
        with self._lock, session_scope(self._session_factory) as session:
            rows = session.execute(
                select(Group)
                .join(Membership, Membership.group_id == Group.id)
                .where(Membership.identity_id == identity_id)
                .order_by(Group.name)
            ).scalars()
            return [self._row_to_group(row) for row in rows]

    def replace_memberships(
        self, identity_id: int, group_ids: Iterable[int], *, directory_sourced: bool
    ) -> list[int]:
        """Make the identity's memberships in one group class equal ``group_ids``.

        Only groups whose ``directory_sourced`` flag matches are touched; ids of
        the other class are ignored. Delete and re-create run in one transaction.
        """
        wanted = set(group_ids)
        with self._lock, session_scope(self._session_factory) as session:
            if session.get(Identity, identity_id) is None:
                raise NotFound(f"Identity not found: {identity_id}", {"identity_id": identity_id})
            eligible = set(
                session.execute(
                    select(Group.id).where(
                        Group.id.in_(wanted), Group.directory_sourced == directory_sourced
                    )
                ).scalars()
            )
            ignored = wanted - eligible
            if ignored:
                logger.warning(
                    "Ignoring groups outside the reconciled class",
                    event="store.memberships_ignored",
                    identity_id=identity_id,
                    group_ids=sorted(ignored),
                    directory_sourced=directory_sourced,
                )
            class_ids = select(Group.id).where(Group.directory_sourced == directory_sourced)
            session.execute(
                delete(Membership).where(
                    Membership.identity_id == identity_id,
                    Membership.group_id.in_(class_ids),
                )
            )
            for group_id in sorted(eligible):
                session.add(Membership(identity_id=identity_id, group_id=group_id))
        return sorted(eligible)

    def set_local_memberships(self, identity_id: int, group_ids: Iterable[int]) -> list[int]:
        return self.replace_memberships(identity_id, group_ids, directory_sourced=False)

    # ------------------------------------------------------------------
    # Directory settings
    # ------------------------------------------------------------------
    def get_directory_config(self) -> DirectoryConfig:
        """Stored directory settings, or a disabled default when none are saved."""
        with self._lock, session_scope(self._session_factory) as session:
            row = session.get(DirectorySettings, DIRECTORY_SETTINGS_ID)
            if row is None:
                return DirectoryConfig()
            return DirectoryConfig.model_validate(json.loads(row.payload_json))

    def seed_directory_config(self, config: DirectoryConfig) -> bool:
        """Store ``config`` only when no directory settings were saved yet."""
        with self._lock, session_scope(self._session_factory) as session:
            if session.get(DirectorySettings, DIRECTORY_SETTINGS_ID) is not None:
                return False
            session.add(
                DirectorySettings(
                    id=DIRECTORY_SETTINGS_ID,
                    payload_json=json.dumps(config.model_dump(mode="json")),
                    updated_at=self._now(),
                )
            )
        logger.info(
            "Directory settings seeded from configuration",
            event="store.directory_config_seeded",
            enabled=config.enabled,
            host=config.host,
        )
        return True

    def save_directory_config(self, config: DirectoryConfig) -> DirectoryConfig:
        payload = json.dumps(config.model_dump(mode="json"))
        with self._lock, session_scope(self._session_factory) as session:
            row = session.get(DirectorySettings, DIRECTORY_SETTINGS_ID)
            if row is None:
                row = DirectorySettings(id=DIRECTORY_SETTINGS_ID, payload_json=payload)
                session.add(row)
            else:
                row.payload_json = payload
            row.updated_at = self._now()
        logger.info(
            "Directory settings saved",
            event="store.directory_config_saved",
            enabled=config.enabled,
            host=config.host,
        )
        return config

    # ------------------------------------------------------------------
    # Row conversion helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_identity(row: Identity) -> IdentityRecord:
        return IdentityRecord(
            id=row.id,
            username=row.username,
            credential_hash=row.credential_hash,
            email=row.email,
            display_name=row.display_name,
            directory_managed=bool(row.directory_managed),
            active=bool(row.active),
            last_login=row.last_login,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_group(row: Group) -> GroupRecord:
        return GroupRecord(
            id=row.id,
            name=row.name,
            description=row.description,
            directory_sourced=bool(row.directory_sourced),
            directory_dn=row.directory_dn,
            classification=row.classification,
            permissions=PermissionMap.from_json(row.permissions_json),
        )
