# Point both services at throwaway SQLite files before their repos are imported
import os
import tempfile

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="services-tests-")
os.environ.setdefault("INVENTORY_DATABASE_URL", f"sqlite:///{_DB_DIR}/inventory.db")
os.environ.setdefault("PAYMENTS_DATABASE_URL", f"sqlite:///{_DB_DIR}/payments.db")


@pytest.fixture
def inventory_db():
    from services.inventory import repo

    repo.Base.metadata.drop_all(repo.engine)
    repo.init_db()
    return repo


@pytest.fixture
def payments_db():
    from services.payments import repo

    repo.Base.metadata.drop_all(repo.engine)
    repo.init_db()
    return repo
