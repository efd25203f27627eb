"""Azure Blob Storage access: clients, containers and SAS tokens."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

from azure.core.exceptions import AzureError, ResourceExistsError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContainerClient,
    ContainerSasPermissions,
    generate_blob_sas,
    generate_container_sas,
)

from arr_conversion.config import Settings, parse_connection_string
from arr_conversion.errors import ConfigurationError, UploadError

logger = logging.getLogger("arr_conversion.storage")

CONTAINER_SAS_LIFETIME = timedelta(hours=24)
OUTPUT_BLOB_SAS_LIFETIME = timedelta(hours=48)


def get_service_client(settings: Settings) -> BlobServiceClient:
    if not settings.storage_connection_string:
        raise ConfigurationError("AZURE_CONN_STR not set. Copy .env.template to .env and fill it in.")
    try:
        return BlobServiceClient.from_connection_string(
            settings.storage_connection_string,
            connection_timeout=30,
            read_timeout=120,
        )
    except ValueError as exc:
        raise ConfigurationError(f"Cannot connect to Azure: {exc}") from exc


def ensure_container(service: BlobServiceClient, container_name: str) -> ContainerClient:
    """Return a client for the container, creating the container if needed."""
    container_client = service.get_container_client(container_name)
    try:
        container_client.create_container()
        logger.info(f"Created container '{container_name}'.")
    except ResourceExistsError:
        logger.debug(f"Container '{container_name}' already exists.")
    except AzureError as exc:
        raise UploadError(f"Cannot access container '{container_name}': {exc}") from exc
    return container_client


def _account_key(settings: Settings) -> str:
    return parse_connection_string(settings.storage_connection_string)["AccountKey"]


def generate_container_sas_tokens(settings: Settings, now: Optional[datetime] = None) -> Settings:
    """
    Return settings carrying a read/list SAS for the input container and a
    write SAS for the output container.
    """
    conversion = settings.conversion
    key = _account_key(settings)
    expiry = (now or datetime.now(timezone.utc)) + CONTAINER_SAS_LIFETIME

    input_sas = generate_container_sas(
        account_name=conversion.storage_account_name,
        container_name=conversion.blob_input_container_name,
        account_key=key,
        permission=ContainerSasPermissions(read=True, list=True),
        expiry=expiry,
    )
    output_sas = generate_container_sas(
        account_name=conversion.storage_account_name,
        container_name=conversion.blob_output_container_name,
        account_key=key,
        permission=ContainerSasPermissions(write=True),
        expiry=expiry,
    )
    logger.debug(f"Generated container SAS tokens valid until {expiry.isoformat()}")
    return settings.with_sas(input_sas, output_sas)


def converted_asset_url(
    settings: Settings,
    converted_asset: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> Optional[str]:
    """
    Build a read-only SAS URL for the converted asset blob.

    Returns None when the asset lives in a storage account other than the one
    the connection string holds a key for.
    """
    parts = parse_connection_string(settings.storage_connection_string)
    account_name = converted_asset.get("storageAccountName")
    container_name = converted_asset.get("blobContainerName")
    blob_path = converted_asset.get("assetFilePath")
    if not (container_name and blob_path) or account_name != parts["AccountName"]:
        return None

    sas = generate_blob_sas(
        account_name=account_name,
        container_name=container_name,
        blob_name=blob_path,
        account_key=parts["AccountKey"],
        permission=BlobSasPermissions(read=True),
        expiry=(now or datetime.now(timezone.utc)) + OUTPUT_BLOB_SAS_LIFETIME,
    )
    return (
        f"https://{account_name}.blob.{parts.get('EndpointSuffix', 'core.windows.net')}/"
        f"{container_name}/{blob_path}?{sas}"
    )
