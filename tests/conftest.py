from collections import Counter
from collections.abc import Generator

import bcrypt
import pytest
from fastapi.testclient import TestClient

from portcullis.app import get_application
from portcullis.dependencies import (
    get_settings,
    init_app_state,
)
from portcullis.utils.initialization import get_number_of_workers
from tests.commons import (
    override_get_number_of_workers,
    override_get_settings,
    override_init_app_state,
    settings,
)


@pytest.fixture(scope="module", autouse=True)
def client() -> Generator[TestClient, None, None]:
    test_app = get_application(settings=settings, drop_db=True)  # Create the test's app

    test_app.dependency_overrides[init_app_state] = override_init_app_state
    test_app.dependency_overrides[get_settings] = override_get_settings
    test_app.dependency_overrides[get_number_of_workers] = (
        override_get_number_of_workers
    )

    # The TestClient should be used as a context manager in order for the lifespan to be called
    # See https://www.starlette.io/lifespan/#running-lifespan-in-tests
    with TestClient(test_app) as client:
        yield client


@pytest.fixture
def bcrypt_operations(monkeypatch: pytest.MonkeyPatch) -> Counter[str]:
    """
    Count the calls made to bcrypt `hashpw` and `checkpw`
    """
    operations: Counter[str] = Counter()

    def count(name: str):
        original = getattr(bcrypt, name)

        def counted(*args):
            operations[name] += 1
            return original(*args)

        return counted

    monkeypatch.setattr(bcrypt, "hashpw", count("hashpw"))
    monkeypatch.setattr(bcrypt, "checkpw", count("checkpw"))
    return operations
