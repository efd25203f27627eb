from __future__ import annotations

import base64
import logging
from typing import Any

import pytest
import requests
from azure.core.exceptions import AzureError, ResourceExistsError

from arr_conversion import config
from arr_conversion.config import AccountSettings, AssetConversionSettings, Settings

ACCOUNT_KEY = base64.b64encode(bytes(range(64))).decode("ascii")
CONN_STR = (
    "DefaultEndpointsProtocol=https;AccountName=arrstorage;"
    f"AccountKey={ACCOUNT_KEY};EndpointSuffix=core.windows.net"
)
SERVICE_ENDPOINT = "https://remoterendering.westus2.mixedreality.azure.com"


class DummyHTTPResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._json_data = json_data
        self.text = text

    def json(self) -> Any:
        return self._json_data

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Client Error", response=self)


class DummySession:
    """Stands in for ``requests``; replays queued responses and records calls."""

    def __init__(self, post_queue=None, get_queue=None) -> None:
        self._post_queue = list(post_queue or [])
        self._get_queue = list(get_queue or [])
        self.calls: list[tuple[str, str, dict]] = []

    def _next(self, queue):
        if not queue:
            raise RuntimeError("No responses queued")
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def post(self, url, headers=None, json=None, timeout=None):
        self.calls.append(("POST", url, {"headers": headers, "json": json}))
        return self._next(self._post_queue)

    def get(self, url, headers=None, timeout=None):
        self.calls.append(("GET", url, {"headers": headers}))
        return self._next(self._get_queue)


class DummyContainerClient:
    def __init__(self, name: str = "arrinput", fail_on: str | None = None, exists: bool = True) -> None:
        self.name = name
        self.fail_on = fail_on
        self.exists = exists
        self.created = False
        self.uploads: list[dict] = []

    def create_container(self):
        if self.exists:
            raise ResourceExistsError("ContainerAlreadyExists")
        self.created = True

    def upload_blob(self, name, data, overwrite=False, metadata=None, content_settings=None):
        if name == self.fail_on:
            raise AzureError("write failed")
        self.uploads.append(
            {
                "name": name,
                "data": data.read(),
                "overwrite": overwrite,
                "content_type": content_settings.content_type if content_settings else None,
            }
        )


class DummyServiceClient:
    def __init__(self, containers: dict[str, DummyContainerClient] | None = None) -> None:
        self.containers = containers or {}

    def get_container_client(self, name):
        return self.containers.setdefault(name, DummyContainerClient(name))


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    for key in config._ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config, "load_dotenv", lambda *a, **kw: False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def asset_dir(tmp_path):
    root = tmp_path / "model"
    (root / "textures").mkdir(parents=True)
    (root / "box.fbx").write_bytes(b"FBX-BINARY")
    (root / "textures" / "wood.png").write_bytes(b"\x89PNG")
    return root


@pytest.fixture
def settings(asset_dir):
    return Settings(
        account=AccountSettings(
            account_id="acct-id",
            account_key="acct-key",
            service_endpoint=SERVICE_ENDPOINT,
            region="westus2",
        ),
        conversion=AssetConversionSettings(
            storage_account_name="arrstorage",
            blob_input_container_name="arrinput",
            blob_output_container_name="arroutput",
            input_folder_path="models/",
            output_folder_path="converted/",
            local_asset_directory_path=str(asset_dir),
            input_asset_path="box.fbx",
            output_asset_file_name="box.arrAsset",
        ),
        storage_connection_string=CONN_STR,
    )


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger = logging.getLogger("arr_conversion")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
