"""Tests for Smart-Merge preservation of destination identity."""

import pytest

from conftest import DEST_URL, SOURCE_URL, add_option, add_user, create_tables
from destination import (
    CreateTable,
    FinalizeMigration,
    PrepareDatabase,
    ProcessRows,
    SearchReplace,
    SmartMergePolicy,
    TransientStore,
    translate_table_name,
)
from destination.smart_merge import PRESERVED_ADMIN_KEY, PRESERVED_OPTIONS_KEY
from stores import SQLiteStore
from stores.options import get_option
from transfer.row_pager import RowPager

SOURCE_TABLES = ('wp_options', 'wp_posts', 'wp_usermeta', 'wp_users')


@pytest.fixture
def source_store():
    store = SQLiteStore()
    create_tables(store)
    add_user(store, 1, 'olduser', administrator=True)
    add_user(store, 7, 'someone')
    add_option(store, 'siteurl', SOURCE_URL)
    add_option(store, 'home', SOURCE_URL)
    add_option(store, 'blogname', 'Old Blog')
    add_option(store, 'admin_email', 'old@example.com')
    store.insert_row('wp_posts', {
        'ID': 1, 'post_title': 'Hello', 'post_content': f'<a href="{SOURCE_URL}/about">About</a>',
        'guid': f'{SOURCE_URL}/?p=1'
    })
    yield store
    store.close()


@pytest.fixture
def populated_destination(destination, destination_store):
    create_tables(destination_store)
    add_user(destination_store, 7, 'admin', administrator=True)
    add_user(destination_store, 3, 'editor')
    add_option(destination_store, 'siteurl', DEST_URL)
    add_option(destination_store, 'home', DEST_URL)
    add_option(destination_store, 'admin_email', 'ops@new.example.com')
    destination_store.insert_row('wp_posts', {'ID': 99, 'post_title': 'Destination only'})
    return destination


def migrate(destination, source_store, current_user_id):
    """Drive the destination API through a full database migration."""
    prepare = destination.dispatch(PrepareDatabase(SOURCE_TABLES, 'wp_', current_user_id=current_user_id))

    pager = RowPager(source_store, batch_size=100)
    for table in SOURCE_TABLES:
        destination.dispatch(CreateTable(source_store.show_create_table(table), table))
        for page in pager.iter_batches(table, encode=True):
            destination.dispatch(ProcessRows(table, tuple(page.rows)))

    destination.dispatch(SearchReplace(source_url=SOURCE_URL))
    finalize = destination.dispatch(FinalizeMigration())
    return prepare, finalize


class TestTranslateTableName:
    """Test prefix translation."""

    def test_swaps_prefix(self):
        assert translate_table_name('wp_posts', 'wp_', 'site2_') == 'site2_posts'

    def test_prefix_only_at_start(self):
        assert translate_table_name('old_wp_posts', 'wp_', 'site2_') == 'old_wp_posts'


class TestSmartMergeEndToEnd:
    """Test a full migration against a destination with its own operator."""

    def test_operator_account_preserved(self, populated_destination, destination_store, source_store):
        migrate(populated_destination, source_store, current_user_id=7)

        user = destination_store.query("SELECT user_login, user_pass FROM wp_users WHERE ID = 7")[0]
        assert user == {'user_login': 'admin', 'user_pass': 'hash-admin'}

    def test_operator_meta_preserved(self, populated_destination, destination_store, source_store):
        migrate(populated_destination, source_store, current_user_id=7)

        meta = destination_store.query("SELECT meta_key FROM wp_usermeta WHERE user_id = 7")
        assert [row['meta_key'] for row in meta] == ['wp_capabilities']

    def test_source_users_imported_except_collisions(self, populated_destination, destination_store, source_store):
        migrate(populated_destination, source_store, current_user_id=7)

        logins = {row['user_login'] for row in destination_store.query("SELECT user_login FROM wp_users")}
        # editor (#3) is cleared; source #7 collides with the operator and is dropped as a duplicate
        assert logins == {'admin', 'olduser'}

    def test_site_identity_restored(self, populated_destination, destination_store, source_store):
        migrate(populated_destination, source_store, current_user_id=7)

        assert get_option(destination_store, 'wp_options', 'siteurl') == DEST_URL
        assert get_option(destination_store, 'wp_options', 'home') == DEST_URL
        assert get_option(destination_store, 'wp_options', 'admin_email') == 'ops@new.example.com'

    def test_source_content_imported_and_rewritten(self, populated_destination, destination_store, source_store):
        migrate(populated_destination, source_store, current_user_id=7)

        posts = destination_store.query("SELECT ID, post_content FROM wp_posts ORDER BY ID")
        assert posts == [{'ID': 1, 'post_content': f'<a href="{DEST_URL}/about">About</a>'}]

    def test_prepare_report(self, populated_destination, source_store):
        prepare, finalize = migrate(populated_destination, source_store, current_user_id=7)

        assert prepare['dropped'] == ['wp_posts']
        assert prepare['current_user_preserved'] == 7
        assert finalize['options_restored'] == 3
        assert finalize['admin_restored'] is False

    def test_first_admin_kept_without_operator_id(self, populated_destination, destination_store, source_store):
        """With no operator ID the first administrator stays signed in through the run."""
        prepare, finalize = migrate(populated_destination, source_store, current_user_id=None)

        assert prepare['current_user_preserved'] == 7
        assert finalize['admin_restored'] is False
        user = destination_store.query("SELECT user_login, user_pass FROM wp_users WHERE ID = 7")[0]
        assert user == {'user_login': 'admin', 'user_pass': 'hash-admin'}

    def test_source_account_reusing_operator_login(self, populated_destination, destination_store, source_store):
        add_user(source_store, 2, 'admin')
        source_store.update_row('wp_users', {'user_pass': 'hash-source'}, 'ID', 2)

        migrate(populated_destination, source_store, current_user_id=None)

        admins = destination_store.query("SELECT ID, user_pass FROM wp_users WHERE user_login = 'admin'")
        assert admins == [{'ID': 7, 'user_pass': 'hash-admin'}]


class TestSmartMergePolicy:
    """Test the snapshot and restore steps directly."""

    @pytest.fixture
    def policy(self, tmp_path, destination_store):
        create_tables(destination_store)
        return SmartMergePolicy(destination_store, 'wp_', TransientStore(str(tmp_path / 'transients')))

    def test_snapshot_only_protected_options(self, policy, destination_store):
        add_option(destination_store, 'siteurl', DEST_URL)
        add_option(destination_store, 'blogname', 'Not protected')

        assert policy.snapshot_options() == {'siteurl': DEST_URL}
        assert policy.transients.get(PRESERVED_OPTIONS_KEY) == {'siteurl': DEST_URL}

    def test_find_admin_prefers_operator(self, policy, destination_store):
        add_user(destination_store, 2, 'first_admin', administrator=True)
        add_user(destination_store, 5, 'operator')

        assert policy.find_admin(5)['user_login'] == 'operator'
        assert policy.find_admin()['user_login'] == 'first_admin'

    def test_user_id_for_login(self, policy, destination_store):
        add_user(destination_store, 12, 'ops')

        assert policy.user_id_for_login('ops') == 12
        assert policy.user_id_for_login('missing') is None
        assert policy.user_id_for_login('') is None

    def test_no_admin_to_preserve(self, policy):
        assert policy.snapshot_admin() is None
        assert policy.transients.get(PRESERVED_ADMIN_KEY) is None

    def test_restore_clears_snapshots(self, policy, destination_store):
        add_option(destination_store, 'home', DEST_URL)
        policy.snapshot_options()
        destination_store.update_row('wp_options', {'option_value': SOURCE_URL}, 'option_name', 'home')

        result = policy.restore()

        assert result == {'options_restored': 1, 'admin_restored': False}
        assert get_option(destination_store, 'wp_options', 'home') == DEST_URL
        assert policy.transients.get(PRESERVED_OPTIONS_KEY) is None

    def test_is_preserved_table(self, policy):
        assert policy.is_preserved_table('wp_users')
        assert policy.is_preserved_table('wp_options')
        assert not policy.is_preserved_table('wp_posts')

    def test_restore_recreates_lost_account(self, policy, destination_store):
        add_user(destination_store, 7, 'admin', administrator=True)
        policy.snapshot_admin()
        destination_store.execute("DELETE FROM wp_users WHERE ID = 7")

        assert policy.restore()['admin_restored'] is True

        admin = destination_store.query("SELECT ID, user_pass FROM wp_users WHERE user_login = 'admin'")[0]
        assert admin['user_pass'] == 'hash-admin'
        capabilities = destination_store.query(
            "SELECT meta_value FROM wp_usermeta WHERE user_id = ? AND meta_key = 'wp_capabilities'",
            [admin['ID']]
        )
        assert 'administrator' in capabilities[0]['meta_value']

    def test_restore_overwrites_account_reusing_login(self, policy, destination_store):
        """An imported row that took over the login gets the snapshot's credentials back."""
        add_user(destination_store, 7, 'admin', administrator=True)
        policy.snapshot_admin()
        destination_store.execute("DELETE FROM wp_users WHERE ID = 7")
        add_user(destination_store, 2, 'admin')
        destination_store.update_row('wp_users', {'user_pass': 'hash-source'}, 'ID', 2)

        assert policy.restore()['admin_restored'] is True

        admins = destination_store.query("SELECT ID, user_pass FROM wp_users WHERE user_login = 'admin'")
        assert admins == [{'ID': 2, 'user_pass': 'hash-admin'}]

    def test_restore_leaves_intact_account_alone(self, policy, destination_store):
        add_user(destination_store, 7, 'admin', administrator=True)
        policy.snapshot_admin()

        assert policy.restore()['admin_restored'] is False
