"""Shared fixtures: small WordPress-shaped SQLite sites."""

import pytest

from destination import DestinationService, TransientStore
from settings import Settings
from stores import SQLiteStore

SOURCE_URL = 'https://old.example.com'
DEST_URL = 'https://new.example.com'

TABLE_SCHEMAS = {
    'users': (
        "CREATE TABLE {table} (ID INTEGER PRIMARY KEY, user_login TEXT UNIQUE, user_pass TEXT, "
        "user_email TEXT, user_url TEXT, user_nicename TEXT, display_name TEXT, "
        "user_registered TEXT, user_activation_key TEXT)"
    ),
    'usermeta': (
        "CREATE TABLE {table} (umeta_id INTEGER PRIMARY KEY, user_id INTEGER, "
        "meta_key TEXT, meta_value TEXT)"
    ),
    'options': (
        "CREATE TABLE {table} (option_id INTEGER PRIMARY KEY, option_name TEXT UNIQUE, "
        "option_value TEXT, autoload TEXT)"
    ),
    'posts': "CREATE TABLE {table} (ID INTEGER PRIMARY KEY, post_title TEXT, post_content TEXT, guid TEXT)",
}


def create_tables(store, prefix='wp_', names=('users', 'usermeta', 'options', 'posts')):
    for name in names:
        store.execute(TABLE_SCHEMAS[name].format(table=f"{prefix}{name}"))


def add_user(store, user_id, login, prefix='wp_', administrator=False):
    store.insert_row(f"{prefix}users", {
        'ID': user_id,
        'user_login': login,
        'user_pass': f'hash-{login}',
        'user_email': f'{login}@example.com',
        'user_url': '',
        'user_nicename': login,
        'display_name': login.title(),
        'user_registered': '2020-01-01 00:00:00',
        'user_activation_key': '',
    })
    if administrator:
        store.insert_row(f"{prefix}usermeta", {
            'user_id': user_id,
            'meta_key': f'{prefix}capabilities',
            'meta_value': 'a:1:{s:13:"administrator";b:1;}',
        })


def add_option(store, name, value, prefix='wp_'):
    store.insert_row(f"{prefix}options", {'option_name': name, 'option_value': value, 'autoload': 'yes'})


@pytest.fixture
def destination_store():
    store = SQLiteStore()
    yield store
    store.close()


@pytest.fixture
def destination(tmp_path, destination_store):
    content_root = tmp_path / 'wp-content'
    content_root.mkdir()
    return DestinationService(
        store=destination_store,
        settings=Settings(),
        content_root=str(content_root),
        transients=TransientStore(str(tmp_path / 'transients')),
        site_url=DEST_URL,
        table_prefix='wp_'
    )
