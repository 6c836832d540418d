import json
from unittest import mock

import gevent
import pytest

SERVICE_URI = "https://descil.example.com/apps/mturk2/api/service.ashx"

# The body of a GetCodes response from the service.
GET_CODES_RETURN_VALUE = {
    "Operation": "GetCodes",
    "Codes": [
        {"AccessCode": "ABC123", "ExitCode": "EXIT1", "Valid": True},
        {"AccessCode": "DEF456", "ExitCode": "EXIT2", "Valid": True},
        {"AccessCode": "GHI789", "ExitCode": "EXIT3", "Valid": False},
    ],
}


def _fake_response(body=None, status_code=200):
    response = mock.Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.json.return_value = {} if body is None else body
    return response


@pytest.fixture
def fake_response():
    """Factory for stand-ins of the requests.Response returned by requests.post."""
    return _fake_response


@pytest.fixture
def get_codes_body():
    return json.loads(json.dumps(GET_CODES_RETURN_VALUE))


@pytest.fixture(autouse=True)
def reset_config():
    yield

    import descil.config

    descil.config.config = None


@pytest.fixture
def registry():
    from descil.registry import CodeRegistry

    return CodeRegistry(
        [
            {"AccessCode": "ABC123", "ExitCode": "EXIT1"},
            {"AccessCode": "DEF456", "ExitCode": "EXIT2", "usage": 0},
        ]
    )


@pytest.fixture
def empty_registry():
    from descil.registry import CodeRegistry

    return CodeRegistry()


@pytest.fixture
def codes_file(tmp_path):
    path = tmp_path / "codes.json"
    path.write_text(json.dumps(GET_CODES_RETURN_VALUE["Codes"]))
    return str(path)


@pytest.fixture
def post():
    with mock.patch("descil.service.requests.post") as post:
        post.return_value = _fake_response({"Operation": "CheckIn", "Status": "OK"})
        yield post


@pytest.fixture
def subject(registry):
    from descil.service import DescilService

    service = DescilService(
        service_key="SERVICEKEY-0123456789",
        project_code="PROJECT-1",
        uri=SERVICE_URI,
        registry=registry,
    )
    yield service

    # make sure all greenlets complete
    gevent.wait()


@pytest.fixture
def empty_subject(empty_registry):
    from descil.service import DescilService

    service = DescilService(
        service_key="SERVICEKEY-0123456789",
        project_code="PROJECT-1",
        uri=SERVICE_URI,
        registry=empty_registry,
    )
    yield service

    gevent.wait()
