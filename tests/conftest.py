import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    import main

    with TestClient(main.app) as test_client:
        yield test_client
