import os
import tempfile

TEST_ROOT = tempfile.mkdtemp(prefix="dumpkeeper-tests-")

os.environ["DATABASE_URL"] = f"sqlite:///{TEST_ROOT}/test.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/0"
os.environ["DUMPKEEPER_BACKUP_DIR"] = f"{TEST_ROOT}/backups"
os.environ["DUMPKEEPER_LOG_DIR"] = f"{TEST_ROOT}/logs"
os.environ["DUMPKEEPER_APP_LOG_FILE"] = f"{TEST_ROOT}/logs/dumpkeeper.log"

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def clean_tables():
    from dumpkeeper.db import engine, init_db
    from dumpkeeper.models import metadata

    init_db()
    with engine.begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture()
def database_config():
    from dumpkeeper import store

    return store.create_database_config(
        name="primary",
        host="db.internal",
        username="backup",
        password="s3cret",
        database_name="shop",
    )
