"""
Settings resolution for the conversion workflow.

Values are layered, lowest precedence first:

    built-in defaults  <  JSON config file  <  environment / .env  <  command-line flags

The result is an immutable ``Settings`` value that every stage receives
explicitly. Validation happens per stage, before any network activity.
"""

import base64
import binascii
import json
import os
from dataclasses import dataclass, replace
from pathlib import Path, PurePosixPath
from typing import Mapping, Optional

from dotenv import load_dotenv

from arr_conversion.errors import ConfigurationError

DEFAULT_CONFIG_FILE = "arrconfig.json"
DEFAULT_AUTHENTICATION_ENDPOINT = "https://sts.mixedreality.azure.com"
SERVICE_ENDPOINT_TEMPLATE = "https://remoterendering.{region}.mixedreality.azure.com"
OUTPUT_EXTENSION = ".arrAsset"

_PLACEHOLDERS = ("your_account", "your_account_name", "your_account_key", "your_key")
_FIX_HINT = "Copy a fresh connection string from Azure Portal → Storage account → Access keys."


# ---------------------------------------------------------------------------
# Settings values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AccountSettings:
    account_id: str = ""
    account_key: str = ""
    authentication_endpoint: str = DEFAULT_AUTHENTICATION_ENDPOINT
    service_endpoint: str = ""
    region: str = ""


@dataclass(frozen=True)
class AssetConversionSettings:
    storage_account_name: str = ""
    blob_input_container_name: str = ""
    blob_output_container_name: str = ""
    input_folder_path: str = ""
    output_folder_path: str = ""
    local_asset_directory_path: str = ""
    input_asset_path: str = ""
    output_asset_file_name: str = ""
    input_container_sas: Optional[str] = None
    output_container_sas: Optional[str] = None

    def with_sas(self, input_sas: str, output_sas: str) -> "AssetConversionSettings":
        """Return a copy carrying the container SAS tokens."""
        return replace(self, input_container_sas=input_sas, output_container_sas=output_sas)


@dataclass(frozen=True)
class Settings:
    account: AccountSettings
    conversion: AssetConversionSettings
    storage_connection_string: str = ""
    log_path: Optional[str] = None

    def with_sas(self, input_sas: str, output_sas: str) -> "Settings":
        return replace(self, conversion=self.conversion.with_sas(input_sas, output_sas))


# ---------------------------------------------------------------------------
# Layer sources
# ---------------------------------------------------------------------------

# JSON section -> {json key: settings field}
_FILE_KEYS = {
    "accountSettings": {
        "arrAccountId": "account_id",
        "arrAccountKey": "account_key",
        "authenticationEndpoint": "authentication_endpoint",
        "serviceEndpoint": "service_endpoint",
        "region": "region",
    },
    "assetConversionSettings": {
        "localAssetDirectoryPath": "local_asset_directory_path",
        "storageAccountName": "storage_account_name",
        "blobInputContainerName": "blob_input_container_name",
        "inputFolderPath": "input_folder_path",
        "inputAssetPath": "input_asset_path",
        "blobOutputContainerName": "blob_output_container_name",
        "outputFolderPath": "output_folder_path",
        "outputAssetFileName": "output_asset_file_name",
    },
}

_ENV_KEYS = {
    "ARR_ACCOUNT_ID": "account_id",
    "ARR_ACCOUNT_KEY": "account_key",
    "ARR_AUTHENTICATION_ENDPOINT": "authentication_endpoint",
    "ARR_SERVICE_ENDPOINT": "service_endpoint",
    "ARR_REGION": "region",
    "AZURE_CONN_STR": "storage_connection_string",
    "LOG_PATH": "log_path",
}


def _read_config_file(config_path: Optional[str]) -> dict:
    """Flatten the JSON config file into settings field names.

    An explicitly named file must exist; the default ``arrconfig.json`` is optional.
    """
    if config_path is None:
        path = Path(DEFAULT_CONFIG_FILE)
        if not path.exists():
            return {}
    else:
        path = Path(config_path).expanduser()
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")

    try:
        with path.open("r", encoding="utf-8-sig") as fh:
            raw = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Config file {path} is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object.")

    values = {}
    for section, keys in _FILE_KEYS.items():
        block = raw.get(section) or {}
        if not isinstance(block, dict):
            raise ConfigurationError(f"'{section}' in {path} must be a JSON object.")
        for json_key, field_name in keys.items():
            value = block.get(json_key)
            if value not in (None, ""):
                values[field_name] = str(value)
    return values


def _read_environment() -> dict:
    load_dotenv()
    return {
        field_name: os.environ[env_key]
        for env_key, field_name in _ENV_KEYS.items()
        if os.environ.get(env_key)
    }


# ---------------------------------------------------------------------------
# Connection string
# ---------------------------------------------------------------------------

def parse_connection_string(conn_str: str) -> dict:
    """Parse a storage connection string and validate each component.

    Returns the key/value pairs. ``AccountKey`` is taken from the raw string
    because the key's '=' padding would be lost by a plain split.
    """
    cs = conn_str.strip()

    parts = {}
    for segment in cs.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        if "=" not in segment:
            raise ConfigurationError(
                f"Malformed AZURE_CONN_STR: segment '{segment}' has no '=' separator.\n{_FIX_HINT}"
            )
        key, _, value = segment.partition("=")
        parts[key.strip()] = value.strip()

    for required in ("AccountName", "AccountKey", "DefaultEndpointsProtocol"):
        if required not in parts:
            raise ConfigurationError(f"AZURE_CONN_STR is missing the '{required}' field.\n{_FIX_HINT}")

    if not parts["AccountName"] or parts["AccountName"] in _PLACEHOLDERS:
        raise ConfigurationError(
            "AZURE_CONN_STR has a placeholder AccountName. "
            "Replace it with your real Azure Storage account name."
        )

    raw_key = cs.split("AccountKey=", 1)[-1].split(";")[0].strip()
    if not raw_key or raw_key in _PLACEHOLDERS:
        raise ConfigurationError(f"AZURE_CONN_STR has a placeholder AccountKey. {_FIX_HINT}")

    # 64-byte keys, base64-encoded
    if len(raw_key) < 40:
        raise ConfigurationError(
            f"AZURE_CONN_STR AccountKey looks too short ({len(raw_key)} chars). "
            "It was likely truncated."
        )
    padded = raw_key + "=" * (-len(raw_key) % 4)
    try:
        decoded = base64.b64decode(padded, validate=True)
    except (binascii.Error, ValueError):
        raise ConfigurationError(
            f"AZURE_CONN_STR AccountKey is not valid base64; it is corrupted or truncated.\n{_FIX_HINT}"
        )
    if len(decoded) != 64:
        raise ConfigurationError(
            f"AZURE_CONN_STR AccountKey decoded to {len(decoded)} bytes (expected 64).\n{_FIX_HINT}"
        )

    if parts["DefaultEndpointsProtocol"].lower() != "https":
        raise ConfigurationError(
            "AZURE_CONN_STR uses a non-HTTPS protocol. Set DefaultEndpointsProtocol=https."
        )

    parts["AccountKey"] = raw_key
    return parts


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def _posix(path: str) -> str:
    return path.replace("\\", "/")


def _folder(path: str) -> str:
    """Blob folder prefix: forward slashes, no leading slash, trailing slash when set."""
    folder = _posix(path).lstrip("/")
    if folder and not folder.endswith("/"):
        folder += "/"
    return folder


def _build(values: Mapping[str, str]) -> Settings:
    region = values.get("region", "")
    service_endpoint = values.get("service_endpoint", "")
    if not service_endpoint and region:
        service_endpoint = SERVICE_ENDPOINT_TEMPLATE.format(region=region)

    account = AccountSettings(
        account_id=values.get("account_id", ""),
        account_key=values.get("account_key", ""),
        authentication_endpoint=values.get(
            "authentication_endpoint", DEFAULT_AUTHENTICATION_ENDPOINT
        ).rstrip("/"),
        service_endpoint=service_endpoint.rstrip("/"),
        region=region,
    )

    storage_account_name = values.get("storage_account_name", "")
    conn_str = values.get("storage_connection_string", "")
    if conn_str:
        conn_account = parse_connection_string(conn_str)["AccountName"]
        if not storage_account_name:
            storage_account_name = conn_account
        elif storage_account_name != conn_account:
            raise ConfigurationError(
                f"storageAccountName '{storage_account_name}' does not match the "
                f"AZURE_CONN_STR account '{conn_account}'."
            )

    input_asset_path = _posix(values.get("input_asset_path", "")).lstrip("/")
    output_asset_file_name = values.get("output_asset_file_name", "")
    if not output_asset_file_name and input_asset_path:
        output_asset_file_name = PurePosixPath(input_asset_path).stem + OUTPUT_EXTENSION

    input_container = values.get("blob_input_container_name", "")
    conversion = AssetConversionSettings(
        storage_account_name=storage_account_name,
        blob_input_container_name=input_container,
        blob_output_container_name=values.get("blob_output_container_name", "") or input_container,
        input_folder_path=_folder(values.get("input_folder_path", "")),
        output_folder_path=_folder(values.get("output_folder_path", "")),
        local_asset_directory_path=values.get("local_asset_directory_path", ""),
        input_asset_path=input_asset_path,
        output_asset_file_name=output_asset_file_name,
    )

    return Settings(
        account=account,
        conversion=conversion,
        storage_connection_string=conn_str,
        log_path=values.get("log_path"),
    )


def load_settings(
    config_path: Optional[str] = None,
    overrides: Optional[Mapping[str, Optional[str]]] = None,
) -> Settings:
    """Merge config file, environment and command-line overrides into ``Settings``.

    ``overrides`` uses settings field names; ``None`` values are ignored so
    unset flags do not shadow lower layers.
    """
    values = {}
    values.update(_read_config_file(config_path))
    values.update(_read_environment())
    values.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return _build(values)


def validate_settings(
    settings: Settings,
    *,
    need_service: bool = True,
    need_storage: bool = True,
    need_storage_key: bool = True,
    need_local: bool = True,
) -> None:
    """Check the fields the selected stages depend on. Raises ConfigurationError."""
    missing = []
    account = settings.account
    conversion = settings.conversion

    if need_service:
        if not account.account_id:
            missing.append("arrAccountId (ARR_ACCOUNT_ID / --account-id)")
        if not account.account_key:
            missing.append("arrAccountKey (ARR_ACCOUNT_KEY / --account-key)")
        if not account.service_endpoint:
            missing.append("serviceEndpoint or region (--service-endpoint / --region)")
        if not account.authentication_endpoint:
            missing.append("authenticationEndpoint")

    if need_storage_key and not settings.storage_connection_string:
        missing.append("storage connection string (AZURE_CONN_STR)")

    if need_storage:
        if not conversion.storage_account_name:
            missing.append("storageAccountName (--storage-account-name)")
        if not conversion.blob_input_container_name:
            missing.append("blobInputContainerName (--input-container)")
        if not conversion.input_asset_path:
            missing.append("inputAssetPath (--input-asset-path)")

    if need_local and not conversion.local_asset_directory_path:
        missing.append("localAssetDirectoryPath (--local-asset-directory)")

    if missing:
        raise ConfigurationError(
            "Missing required settings:\n" + "\n".join(f"  - {m}" for m in missing)
        )

    if need_storage and not conversion.output_asset_file_name.lower().endswith(
        OUTPUT_EXTENSION.lower()
    ):
        raise ConfigurationError(
            f"outputAssetFileName '{conversion.output_asset_file_name}' must end with "
            f"'{OUTPUT_EXTENSION}'."
        )
