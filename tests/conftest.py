import base64
import logging

import pytest

from share_direct import uploader

ENV_VARS = (
    "NODE_ENV",
    "AUTH_MODE",
    "CONNECTION_STRING",
    "ACCOUNT_NAME",
    "ACCOUNT_KEY",
    "CONCURRENCY",
    "CONNECTION_TIMEOUT",
    "READ_TIMEOUT",
    "LOG_PATH",
)

ACCOUNT_KEY = base64.b64encode(b"k" * 64).decode("ascii")
CONNECTION_STRING = (
    "DefaultEndpointsProtocol=https;AccountName=devaccount;"
    f"AccountKey={ACCOUNT_KEY};EndpointSuffix=core.windows.net"
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(uploader, "load_dotenv", lambda *args, **kwargs: False)


@pytest.fixture
def logger():
    return logging.getLogger("tests.share_direct")
