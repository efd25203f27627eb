"""
Upload a local asset directory to the input blob container.

Every file under ``localAssetDirectoryPath`` is written, one at a time, to
``inputFolderPath + <path relative to the root>`` with forward slashes.
A failing file aborts the remaining uploads; blobs already written stay.
"""

import logging
import time
from datetime import datetime, timezone
from pathlib import Path

from azure.core.exceptions import AzureError
from azure.storage.blob import ContainerClient, ContentSettings

from arr_conversion.config import Settings
from arr_conversion.errors import UploadError

logger = logging.getLogger("arr_conversion.uploader")


# ---------------------------------------------------------------------------
# Directory helpers
# ---------------------------------------------------------------------------

def collect_files(root: Path) -> list[Path]:
    """Return all files under root, sorted for deterministic order."""
    return sorted(f for f in root.rglob("*") if f.is_file())


def blob_prefix(folder_path: str) -> str:
    prefix = folder_path.replace("\\", "/").lstrip("/")
    if prefix and not prefix.endswith("/"):
        prefix += "/"
    return prefix


def make_blob_name(file: Path, root: Path, prefix: str) -> str:
    """
    Compute the blob name for a file relative to root.

    Example:
        root   = /assets/model
        file   = /assets/model/textures/wood.png
        prefix = models/
        result = models/textures/wood.png
    """
    relative = str(file.relative_to(root)).replace("\\", "/")
    return blob_prefix(prefix) + relative


def plan_upload(settings: Settings) -> list[tuple[Path, str]]:
    """
    Validate the local asset directory and return (file, blob name) pairs.

    Raises UploadError before anything is written if the input asset or the
    directory is missing, or the directory holds no files.
    """
    conversion = settings.conversion
    root = Path(conversion.local_asset_directory_path).expanduser()

    if not root.is_dir():
        raise UploadError(f"Local asset directory not found: {root}")

    files = collect_files(root)
    if not files:
        raise UploadError(f"Directory is empty (no files found): {root}")

    input_asset = root / conversion.input_asset_path
    if not input_asset.is_file():
        raise UploadError(f"Input asset not found: {input_asset}")

    return [(f, make_blob_name(f, root, conversion.input_folder_path)) for f in files]


def _guess_content_type(path: Path) -> str:
    return {
        ".fbx": "application/octet-stream",
        ".gltf": "model/gltf+json",
        ".glb": "model/gltf-binary",
        ".obj": "model/obj",
        ".mtl": "model/mtl",
        ".ply": "application/octet-stream",
        ".e57": "application/octet-stream",
        ".png": "image/png",
        ".jpg": "image/jpeg",
        ".jpeg": "image/jpeg",
        ".tga": "image/x-tga",
        ".dds": "image/vnd-ms.dds",
        ".json": "application/json",
        ".txt": "text/plain",
    }.get(path.suffix.lower(), "application/octet-stream")


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------

def upload_asset_directory(settings: Settings, container_client: ContainerClient) -> list[str]:
    """Upload every file of the asset directory. Returns the blob names written."""
    files = plan_upload(settings)
    total_files = len(files)
    total_bytes = sum(f.stat().st_size for f, _ in files)

    logger.info(f"Source    : {settings.conversion.local_asset_directory_path}")
    logger.info(f"Container : {settings.conversion.blob_input_container_name}")
    logger.info(f"Files     : {total_files:,}  ({total_bytes / (1024**2):.2f} MiB total)")

    written: list[str] = []
    t0 = time.monotonic()
    for file_num, (file_path, blob_name) in enumerate(files, 1):
        logger.info(f"[{file_num}/{total_files}] {file_path.name}  →  {blob_name}")
        metadata = {
            "uploaded_by": "arr_conversion",
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "original_filename": file_path.name,
        }
        try:
            with file_path.open("rb") as fh:
                container_client.upload_blob(
                    name=blob_name,
                    data=fh,
                    overwrite=True,
                    metadata=metadata,
                    content_settings=ContentSettings(content_type=_guess_content_type(file_path)),
                )
        except (AzureError, OSError) as exc:
            logger.error(f"Upload failed for {file_path}: {exc}")
            raise UploadError(
                f"Upload of '{blob_name}' failed after {len(written)}/{total_files} file(s): {exc}"
            ) from exc
        written.append(blob_name)

    logger.info(
        f"Uploaded {len(written)}/{total_files} file(s) in {_fmt_seconds(time.monotonic() - t0)}."
    )
    return written


def _fmt_seconds(s: float) -> str:
    s = int(s)
    h, rem = divmod(s, 3600)
    m, sec = divmod(rem, 60)
    if h:
        return f"{h}h{m:02d}m{sec:02d}s"
    if m:
        return f"{m}m{sec:02d}s"
    return f"{sec}s"
