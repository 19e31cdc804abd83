import json
from datetime import datetime
from unittest.mock import MagicMock, Mock

import pytest

from payfast_sdk.main import PayfastClient, PayfastSettings


FROZEN_NOW = datetime(2024, 1, 2, 3, 4, 5, 987654)


def mock_http_response(json_data, status_code: int = 200) -> Mock:
    """Return a mock requests.Response whose .json() returns json_data."""
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = json_data
    resp.text = json.dumps(json_data)
    resp.headers = {"Content-Type": "application/json"}
    return resp


@pytest.fixture
def settings():
    return PayfastSettings(merchant_id="M1", pass_phrase="")


@pytest.fixture
def session():
    session = MagicMock()
    session.request.return_value = mock_http_response({"code": "200", "status": "success"})
    return session


@pytest.fixture
def client(settings, session):
    return PayfastClient(settings, session=session, clock=lambda: FROZEN_NOW)
