"""Smart-Merge: keep the destination operable while its tables are replaced.

Order matters. Protected options and the operator account are snapshotted
before any table is touched; the account tables are thinned rather than
dropped so the operator stays authenticated; the snapshot is restored only
after the bulk load.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional

from destination.transients import TransientStore
from models import ProtectedEntitySet
from serialization.php_serializer import dumps
from stores.base_store import DatabaseStore, StoreError, quote_identifier, validate_table_name
from stores.options import get_options, set_option

PRESERVED_OPTIONS_KEY = 'sm_preserved_options'
PRESERVED_ADMIN_KEY = 'sm_preserved_admin'
SNAPSHOT_TTL = 3600

ADMIN_FIELDS = ('user_login', 'user_pass', 'user_email', 'user_url', 'user_nicename', 'display_name')


def translate_table_name(table: str, source_prefix: str, dest_prefix: str) -> str:
    """Swap the source prefix for the destination prefix, only at the start of the name."""
    if source_prefix and table.startswith(source_prefix):
        return dest_prefix + table[len(source_prefix):]
    return table


class SmartMergePolicy:
    """Applies the overwrite / preserve / restore plan for one destination."""

    def __init__(self, store: DatabaseStore, table_prefix: str, transients: TransientStore,
                 protected: Optional[ProtectedEntitySet] = None,
                 logger: Optional[logging.Logger] = None):
        self.store = store
        self.table_prefix = table_prefix
        self.transients = transients
        self.protected = protected or ProtectedEntitySet()
        self.logger = logger or logging.getLogger('site_migrator.destination.smart_merge')

    @property
    def users_table(self) -> str:
        return f"{self.table_prefix}users"

    @property
    def usermeta_table(self) -> str:
        return f"{self.table_prefix}usermeta"

    @property
    def options_table(self) -> str:
        return f"{self.table_prefix}options"

    def base_name(self, table: str) -> str:
        if table.startswith(self.table_prefix):
            return table[len(self.table_prefix):]
        return table

    def is_preserved_table(self, table: str) -> bool:
        """True for tables that are never dropped: protected tables and options."""
        base = self.base_name(table)
        return base in self.protected.tables or base == 'options'

    # Snapshot

    def snapshot_options(self) -> Dict[str, Any]:
        if not self.store.table_exists(self.options_table):
            preserved = {}
        else:
            preserved = get_options(self.store, self.options_table, sorted(self.protected.options))

        self.transients.set(PRESERVED_OPTIONS_KEY, preserved, SNAPSHOT_TTL)
        self.logger.info(f"Preserved {len(preserved)} protected options")
        return preserved

    def find_admin(self, operator_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Return the operator's account, or the first administrator by ID."""
        if not self.store.table_exists(self.users_table):
            return None

        users = quote_identifier(self.users_table)
        p = self.store.placeholder

        if operator_id:
            rows = self.store.query(f"SELECT * FROM {users} WHERE ID = {p}", [operator_id])
            if rows:
                return rows[0]

        if not self.store.table_exists(self.usermeta_table):
            return None

        rows = self.store.query(
            f"SELECT u.* FROM {users} u "
            f"JOIN {quote_identifier(self.usermeta_table)} m ON m.user_id = u.ID "
            f"WHERE m.meta_key = {p} AND m.meta_value LIKE {p} "
            f"ORDER BY u.ID ASC LIMIT 1",
            [f"{self.table_prefix}capabilities", '%administrator%']
        )
        return rows[0] if rows else None

    def user_id_for_login(self, login: str) -> Optional[int]:
        if not login or not self.store.table_exists(self.users_table):
            return None
        rows = self.store.query(
            f"SELECT ID FROM {quote_identifier(self.users_table)} WHERE user_login = {self.store.placeholder}",
            [login]
        )
        return int(rows[0]['ID']) if rows else None

    def snapshot_admin(self, operator_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        admin = self.find_admin(operator_id)
        if admin is None:
            self.logger.warning("No administrator account found to preserve")
            return None

        preserved = {name: admin.get(name, '') for name in ADMIN_FIELDS}
        preserved['ID'] = admin['ID']
        self.transients.set(PRESERVED_ADMIN_KEY, preserved, SNAPSHOT_TTL)
        self.logger.info(f"Preserved administrator account {preserved['user_login']}")
        return preserved

    # Prepare

    def prepare(self, tables: List[str], source_prefix: str,
                current_user_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Snapshot protected state, then clear the destination for the incoming tables.

        Args:
            tables: Source table names scheduled for transfer
            source_prefix: Source table prefix
            current_user_id: Operator account ID to keep through the migration; when
                unset or unknown, the first administrator is kept

        Returns:
            Dictionary with dropped, preserved, current_user_preserved and errors
        """
        self.snapshot_options()
        admin = self.snapshot_admin(current_user_id)
        # Without a known operator the snapshotted administrator is the account kept
        keep_id = admin['ID'] if admin else current_user_id

        result = {
            'dropped': [],
            'preserved': [],
            'current_user_preserved': keep_id,
            'errors': []
        }

        for source_table in tables:
            table = translate_table_name(source_table, source_prefix, self.table_prefix)
            try:
                validate_table_name(table)
            except ValueError as e:
                result['errors'].append(str(e))
                continue

            if not self.store.table_exists(table):
                continue

            try:
                self._clear_table(table, keep_id, result)
            except StoreError as e:
                self.logger.error(f"Failed to prepare {table}: {e.engine_error}")
                result['errors'].append(f"Failed to prepare table {table}: {e.engine_error}")

        self.logger.info(
            f"Prepared destination: {len(result['dropped'])} dropped, "
            f"{len(result['preserved'])} preserved, {len(result['errors'])} errors"
        )
        return result

    def _clear_table(self, table: str, current_user_id: Optional[int], result: Dict[str, Any]) -> None:
        base = self.base_name(table)
        quoted = quote_identifier(table)
        p = self.store.placeholder

        if base == 'users':
            if current_user_id:
                self.store.execute(f"DELETE FROM {quoted} WHERE ID != {p}", [current_user_id])
                result['preserved'].append(f"{table} (current user preserved)")
            else:
                self.store.truncate_table(table)
                result['preserved'].append(f"{table} (truncated)")
        elif base == 'usermeta':
            if current_user_id:
                self.store.execute(f"DELETE FROM {quoted} WHERE user_id != {p}", [current_user_id])
                result['preserved'].append(f"{table} (current user meta preserved)")
            else:
                self.store.truncate_table(table)
                result['preserved'].append(f"{table} (truncated)")
        elif base == 'options' or base in self.protected.tables:
            result['preserved'].append(f"{table} (will be migrated, then fixed)")
        else:
            self.store.drop_table(table)
            result['dropped'].append(table)

    # Restore

    def restore(self) -> Dict[str, Any]:
        """Put back the snapshotted options and the preserved administrator account."""
        result = {'options_restored': 0, 'admin_restored': False}

        preserved_options = self.transients.get(PRESERVED_OPTIONS_KEY)
        if isinstance(preserved_options, dict):
            for name, value in preserved_options.items():
                set_option(self.store, self.options_table, name, value)
                result['options_restored'] += 1
            self.transients.delete(PRESERVED_OPTIONS_KEY)
            self.logger.info(f"Restored {result['options_restored']} protected options")

        preserved_admin = self.transients.get(PRESERVED_ADMIN_KEY)
        if isinstance(preserved_admin, dict):
            result['admin_restored'] = self._restore_admin(preserved_admin)
            self.transients.delete(PRESERVED_ADMIN_KEY)

        return result

    def _restore_admin(self, admin: Dict[str, Any]) -> bool:
        """
        Make the snapshotted account authenticate exactly as before the migration.

        The preserved row (by ID, else the first row with the same login) is
        overwritten with the snapshot; other rows claiming the same login are
        removed. The account is re-created when no row carries its login.

        Returns:
            True if the account had to be re-created or rewritten
        """
        users = quote_identifier(self.users_table)
        p = self.store.placeholder
        login = admin['user_login']
        fields = {name: admin.get(name, '') for name in ADMIN_FIELDS}

        rows = self.store.query(f"SELECT * FROM {users} WHERE user_login = {p} ORDER BY ID", [login])
        target = next((row for row in rows if row['ID'] == admin.get('ID')), rows[0] if rows else None)

        if target is None:
            row = dict(fields)
            row['user_registered'] = datetime.datetime.now().strftime('%Y-%m-%d %H:%M:%S')
            row['user_activation_key'] = ''
            self.store.insert_row(self.users_table, row)
            user_id = self.store.query(f"SELECT ID FROM {users} WHERE user_login = {p}", [login])[0]['ID']
            self.logger.warning(f"Re-created administrator account {login} (ID {user_id})")
        else:
            user_id = target['ID']
            duplicates = [row['ID'] for row in rows if row['ID'] != user_id]
            if not duplicates and all(target.get(name) == value for name, value in fields.items()):
                return False

            for duplicate_id in duplicates:
                self.store.execute(f"DELETE FROM {users} WHERE ID = {p}", [duplicate_id])
                self.store.execute(
                    f"DELETE FROM {quote_identifier(self.usermeta_table)} WHERE user_id = {p}", [duplicate_id]
                )
                self.logger.warning(f"Removed imported account {duplicate_id} that reused the login {login}")

            self.store.update_row(self.users_table, fields, 'ID', user_id)
            self.logger.warning(f"Restored administrator account {login} (ID {user_id}) from the snapshot")

        self._set_user_meta(user_id, f"{self.table_prefix}capabilities", dumps({'administrator': True}))
        self._set_user_meta(user_id, f"{self.table_prefix}user_level", '10')
        return True

    def _set_user_meta(self, user_id: int, key: str, value: str) -> None:
        meta = quote_identifier(self.usermeta_table)
        p = self.store.placeholder
        existing = self.store.query(
            f"SELECT umeta_id FROM {meta} WHERE user_id = {p} AND meta_key = {p}", [user_id, key]
        )
        if existing:
            self.store.update_row(self.usermeta_table, {'meta_value': value}, 'umeta_id', existing[0]['umeta_id'])
        else:
            self.store.insert_row(self.usermeta_table, {'user_id': user_id, 'meta_key': key, 'meta_value': value})


__all__ = [
    'SmartMergePolicy',
    'translate_table_name',
    'PRESERVED_OPTIONS_KEY',
    'PRESERVED_ADMIN_KEY',
    'SNAPSHOT_TTL',
]
