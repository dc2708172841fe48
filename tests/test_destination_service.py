"""Tests for the destination write API."""

import pytest

from conftest import DEST_URL, add_option, create_tables
from destination import (
    CreateTable,
    DropTable,
    ExtractBatch,
    FlushCaches,
    GetDestinationConfig,
    LoadConnectionKey,
    ProcessRows,
    RegenerateSecret,
    SaveConnectionKey,
    SetMode,
    WriteChunk,
    parse_connection_key,
    rewrite_schema,
)
from errors import ChecksumMismatch, InvalidConnectionKey, RowApplyFailure, SchemaApplyFailure
from stores import StoreError
from stores.options import get_option
from transfer.archive import build_archive
from transfer.chunk_transport import md5_hex
from transfer.row_pager import encode_row

POSTS_SCHEMA = "CREATE TABLE wp_posts (ID INTEGER PRIMARY KEY, post_title TEXT, post_content TEXT, guid TEXT)"


def post_rows(*ids):
    return tuple(encode_row({'ID': i, 'post_title': f'Post {i}', 'post_content': '', 'guid': ''}) for i in ids)


class TestRewriteSchema:
    """Test table renaming inside CREATE TABLE statements."""

    def test_backticked_name(self):
        schema = "CREATE TABLE `wp_posts` (\n  `ID` bigint(20) NOT NULL\n) ENGINE=InnoDB"

        result = rewrite_schema(schema, 'wp_posts', 'site2_posts')

        assert result.startswith("CREATE TABLE `site2_posts` (")
        assert 'wp_posts' not in result

    def test_bare_name(self):
        result = rewrite_schema(POSTS_SCHEMA, 'wp_posts', 'site2_posts')

        assert result.startswith("CREATE TABLE `site2_posts` (")

    def test_similar_names_untouched(self):
        schema = "CREATE TABLE wp_posts (ID INTEGER, note TEXT DEFAULT 'wp_postsmeta')"

        assert "'wp_postsmeta'" in rewrite_schema(schema, 'wp_posts', 'x_posts')


class TestSiteConfiguration:
    """Test mode, secret and connection key handling."""

    def test_set_mode(self, destination):
        assert destination.dispatch(SetMode('destination')) == {'mode': 'destination'}
        assert destination.settings.get('mode') == 'destination'

    def test_invalid_mode(self, destination):
        with pytest.raises(ValueError):
            destination.dispatch(SetMode('mirror'))

    def test_regenerate_secret(self, destination):
        result = destination.dispatch(RegenerateSecret())

        url, secret = parse_connection_key(result['key'])
        assert url == DEST_URL
        assert secret == destination.settings.get('migration_secret')
        assert len(secret) == 64

    def test_save_and_load_connection_key(self, destination):
        key = 'https://old.example.com|c2VjcmV0'

        assert destination.dispatch(SaveConnectionKey(key)) == {'source_url': 'https://old.example.com'}
        assert destination.dispatch(LoadConnectionKey()) == {'key': key}
        assert destination.settings.get('source_url') == 'https://old.example.com'

    def test_save_invalid_connection_key(self, destination):
        with pytest.raises(InvalidConnectionKey):
            destination.dispatch(SaveConnectionKey('not-a-key'))

    def test_load_without_saved_key(self, destination):
        assert destination.dispatch(LoadConnectionKey()) == {'key': ''}

    def test_get_config(self, destination):
        assert destination.dispatch(GetDestinationConfig()) == {
            'table_prefix': 'wp_', 'home_url': DEST_URL, 'site_url': DEST_URL
        }

    def test_unknown_request(self, destination):
        with pytest.raises(TypeError):
            destination.dispatch({'action': 'create_table'})


class TestCreateTable:
    """Test schema application."""

    def test_creates_translated_table(self, destination, destination_store):
        destination.table_prefix = 'site2_'

        result = destination.dispatch(CreateTable(POSTS_SCHEMA, 'wp_posts', 'wp_'))

        assert result == {'table': 'site2_posts', 'source_table': 'wp_posts', 'skipped': False}
        assert destination_store.table_exists('site2_posts')

    def test_replaces_leftover_table(self, destination, destination_store):
        create_tables(destination_store, names=('posts',))
        destination_store.insert_row('wp_posts', {'ID': 1, 'post_title': 'stale'})

        destination.dispatch(CreateTable(POSTS_SCHEMA, 'wp_posts'))

        assert destination_store.count_rows('wp_posts') == 0

    def test_keeps_preserved_table(self, destination, destination_store):
        create_tables(destination_store, names=('options',))
        add_option(destination_store, 'blogname', 'Destination')

        result = destination.dispatch(CreateTable(
            "CREATE TABLE wp_options (option_id INTEGER PRIMARY KEY)", 'wp_options'
        ))

        assert result['skipped'] is True
        assert get_option(destination_store, 'wp_options', 'blogname') == 'Destination'

    def test_invalid_schema(self, destination):
        with pytest.raises(SchemaApplyFailure) as excinfo:
            destination.dispatch(CreateTable("CREATE TABLE wp_broken (", 'wp_broken'))

        assert excinfo.value.table == 'wp_broken'

    def test_missing_schema(self, destination):
        with pytest.raises(ValueError):
            destination.dispatch(CreateTable('', 'wp_posts'))

    def test_drop_table(self, destination, destination_store):
        create_tables(destination_store, names=('posts',))

        destination.dispatch(DropTable('wp_posts'))

        assert not destination_store.table_exists('wp_posts')
        with pytest.raises(ValueError):
            destination.dispatch(DropTable('wp_posts'))


class TestProcessRows:
    """Test batched row application."""

    @pytest.fixture(autouse=True)
    def posts_table(self, destination_store):
        create_tables(destination_store, names=('posts',))

    def test_inserts_batch(self, destination, destination_store):
        result = destination.dispatch(ProcessRows('wp_posts', post_rows(1, 2, 3)))

        assert result == {'table': 'wp_posts', 'inserted': 3, 'duplicates': 0, 'errors': [], 'retried': False}
        assert destination_store.count_rows('wp_posts') == 3

    def test_replayed_batch_is_idempotent(self, destination, destination_store):
        """Applying a batch again after a crash adds no rows."""
        destination.dispatch(ProcessRows('wp_posts', post_rows(1, 2, 3)))

        result = destination.dispatch(ProcessRows('wp_posts', post_rows(2, 3, 4)))

        assert result['inserted'] == 1
        assert result['duplicates'] == 2
        assert destination_store.count_rows('wp_posts') == 4

    def test_prefix_translated(self, destination, destination_store):
        result = destination.dispatch(ProcessRows('old_posts', post_rows(1), source_prefix='old_'))

        assert result['table'] == 'wp_posts'
        assert destination_store.count_rows('wp_posts') == 1

    def test_bad_row_skipped(self, destination, destination_store):
        rows = post_rows(1) + ({'ID': 2, 'post_title': '%%%', 'post_title_base64': True},)

        result = destination.dispatch(ProcessRows('wp_posts', rows))

        assert result['inserted'] == 1
        assert len(result['errors']) == 1

    def test_unknown_column_reported(self, destination):
        result = destination.dispatch(ProcessRows('wp_posts', ({'ID': 1, 'no_such_column': 'x'},)))

        assert result['inserted'] == 0
        assert len(result['errors']) == 1

    def test_failed_commit_retried_once(self, destination, destination_store, monkeypatch):
        original_commit = destination_store._commit
        calls = {'count': 0}

        def flaky_commit():
            calls['count'] += 1
            if calls['count'] == 1:
                raise StoreError("database is locked")
            original_commit()

        monkeypatch.setattr(destination_store, '_commit', flaky_commit)

        result = destination.dispatch(ProcessRows('wp_posts', post_rows(1, 2)))

        assert result['retried'] is True
        assert result['inserted'] == 2
        assert destination_store.count_rows('wp_posts') == 2

    def test_batch_failing_twice_rolls_back(self, destination, destination_store, monkeypatch):
        def failing_commit():
            raise StoreError("disk I/O error")

        monkeypatch.setattr(destination_store, '_commit', failing_commit)

        with pytest.raises(RowApplyFailure) as excinfo:
            destination.dispatch(ProcessRows('wp_posts', post_rows(1, 2)))

        assert excinfo.value.details['rows'] == 2
        monkeypatch.undo()
        assert destination_store.count_rows('wp_posts') == 0


class TestFileRequests:
    """Test chunk writes and archive extraction through dispatch."""

    def test_write_chunk(self, destination):
        result = destination.dispatch(WriteChunk('uploads/a.bin', 0, b'abc', md5_hex(b'abc')))

        assert result == {'path': 'uploads/a.bin', 'bytes_written': 3}

    def test_write_chunk_rejects_bad_checksum(self, destination):
        with pytest.raises(ChecksumMismatch):
            destination.dispatch(WriteChunk('uploads/a.bin', 0, b'abc', md5_hex(b'abd')))

    def test_extract_batch(self, destination, tmp_path):
        source_root = tmp_path / 'source'
        (source_root / 'themes').mkdir(parents=True)
        (source_root / 'themes' / 'style.css').write_text('body {}')
        archive = build_archive(str(source_root), ['themes/style.css'])

        result = destination.dispatch(ExtractBatch(archive['data'], archive['checksum']))

        assert result['files'] == ['themes/style.css']
        assert (tmp_path / 'wp-content' / 'themes' / 'style.css').read_text() == 'body {}'


class TestFlushCaches:
    """Test cache cleanup after a migration."""

    def test_removes_cached_options(self, destination, destination_store):
        create_tables(destination_store, names=('options',))
        add_option(destination_store, '_transient_feed', 'x')
        add_option(destination_store, '_site_transient_update', 'x')
        add_option(destination_store, 'rewrite_rules', 'x')
        add_option(destination_store, 'blogname', 'Kept')

        result = destination.dispatch(FlushCaches())

        assert result['options_deleted'] == 3
        assert get_option(destination_store, 'wp_options', 'blogname') == 'Kept'

    def test_without_options_table(self, destination):
        assert destination.dispatch(FlushCaches()) == {'options_deleted': 0, 'transients_purged': 0}
