"""
Client for the Azure Remote Rendering conversion REST API.

Submission and status calls return explicit result values instead of
raising on HTTP failures; the caller decides whether to abort.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

import requests

from arr_conversion.config import Settings

logger = logging.getLogger("arr_conversion.conversion")

REQUEST_TIMEOUT = 60
DEFAULT_POLL_INTERVAL = 10


class ConversionStatus(Enum):
    NOT_STARTED = "notstarted"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: Any) -> Optional["ConversionStatus"]:
        """Case-insensitive lookup; unknown or non-string values map to None."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    @property
    def is_terminal(self) -> bool:
        return self in (ConversionStatus.SUCCESS, ConversionStatus.FAILURE)


class PollOutcome(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class SubmitResult:
    conversion_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.conversion_id is not None


@dataclass(frozen=True)
class StatusResult:
    body: Optional[dict] = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.body is not None


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    converted_asset: Optional[dict] = None
    reason: Optional[str] = None
    attempts: int = 0
    status: Optional[str] = None


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

def conversions_url(settings: Settings, suffix: str) -> str:
    account = settings.account
    return f"{account.service_endpoint}/v1/accounts/{account.account_id}/conversions/{suffix}"


def _headers(token: str) -> dict:
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }


def build_conversion_request(
    settings: Settings,
    use_sas: bool = False,
    extra_fields: Optional[Mapping[str, Any]] = None,
) -> dict:
    """
    Build the JSON body for a conversion request.

    The SAS variant embeds the input read/list and output write container
    tokens; the linked-storage variant never carries them. ``extra_fields``
    is merged into the top level and wins over the built-in keys.
    """
    conversion = settings.conversion
    body = {
        "input": {
            "storageAccountName": conversion.storage_account_name,
            "blobContainerName": conversion.blob_input_container_name,
            "folderPath": conversion.input_folder_path,
            "inputAssetPath": conversion.input_asset_path,
        },
        "output": {
            "storageAccountName": conversion.storage_account_name,
            "blobContainerName": conversion.blob_output_container_name,
            "folderPath": conversion.output_folder_path,
            "outputAssetFileName": conversion.output_asset_file_name,
        },
    }
    if use_sas:
        if not conversion.input_container_sas or not conversion.output_container_sas:
            raise ValueError("SAS submission requires input and output container SAS tokens.")
        body["input"]["containerReadListSas"] = conversion.input_container_sas
        body["output"]["containerWriteSas"] = conversion.output_container_sas

    body.update(extra_fields or {})
    return body


def _describe_error(exc: requests.exceptions.RequestException) -> str:
    response = exc.response
    if response is None:
        return str(exc)
    detail = response.text.strip() if response.text else ""
    return f"{exc} {detail}".strip()


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

def submit_conversion(
    settings: Settings,
    token: str,
    use_sas: bool = False,
    extra_fields: Optional[Mapping[str, Any]] = None,
    session: Optional[requests.Session] = None,
) -> SubmitResult:
    """POST a conversion request and return the conversion id. No retries."""
    http = session or requests
    suffix = "createWithSharedAccessSignature" if use_sas else "create"
    url = conversions_url(settings, suffix)
    body = build_conversion_request(settings, use_sas=use_sas, extra_fields=extra_fields)

    logger.info(f"Submitting conversion of '{settings.conversion.input_asset_path}' ({suffix})")
    logger.debug(f"POST {url}")
    try:
        response = http.post(url, headers=_headers(token), json=body, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        payload = response.json()
    except requests.exceptions.RequestException as exc:
        status_code = exc.response.status_code if exc.response is not None else None
        message = _describe_error(exc)
        logger.error(f"Conversion request failed: {message}")
        return SubmitResult(error=message, status_code=status_code)

    conversion_id = payload.get("conversionId") if isinstance(payload, dict) else None
    if not conversion_id:
        logger.error(f"Conversion response carried no conversionId: {payload}")
        return SubmitResult(error="Response did not contain a conversionId.", status_code=response.status_code)

    logger.info(f"Conversion submitted. Conversion ID: {conversion_id}")
    return SubmitResult(conversion_id=conversion_id, status_code=response.status_code)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

def get_conversion_status(
    settings: Settings,
    token: str,
    conversion_id: str,
    session: Optional[requests.Session] = None,
) -> StatusResult:
    """Single GET of the conversion status."""
    http = session or requests
    url = conversions_url(settings, conversion_id)
    try:
        response = http.get(url, headers={"Authorization": f"Bearer {token}"}, timeout=REQUEST_TIMEOUT)
        response.raise_for_status()
        body = response.json()
    except requests.exceptions.RequestException as exc:
        status_code = exc.response.status_code if exc.response is not None else None
        message = _describe_error(exc)
        logger.error(f"Status request for {conversion_id} failed: {message}")
        return StatusResult(error=message, status_code=status_code)

    if not isinstance(body, dict):
        return StatusResult(error=f"Unexpected status payload: {body!r}", status_code=response.status_code)
    return StatusResult(body=body, status_code=response.status_code)


def interpret_status(body: Mapping[str, Any], attempts: int = 0) -> PollResult:
    raw_status = body.get("status")
    status = ConversionStatus.parse(raw_status)

    if status is None or not status.is_terminal:
        return PollResult(PollOutcome.PENDING, attempts=attempts, status=raw_status)
    if status is ConversionStatus.SUCCESS:
        return PollResult(
            PollOutcome.SUCCEEDED,
            converted_asset=body.get("convertedAsset"),
            attempts=attempts,
            status=raw_status,
        )

    error = body.get("error") or {}
    reason = error.get("message") if isinstance(error, dict) else str(error)
    return PollResult(
        PollOutcome.FAILED,
        reason=reason or "Conversion failed.",
        attempts=attempts,
        status=raw_status,
    )


def poll_conversion(
    settings: Settings,
    token: str,
    conversion_id: str,
    interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: Optional[int] = None,
    deadline: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    session: Optional[requests.Session] = None,
) -> PollResult:
    """
    Query the conversion status every ``interval`` seconds until Success or Failure.

    ``max_attempts`` bounds the number of queries and ``deadline`` the elapsed
    seconds; with both ``None`` the loop runs until a terminal status arrives.
    """
    start = clock()
    attempts = 0
    while True:
        attempts += 1
        result = get_conversion_status(settings, token, conversion_id, session=session)
        if not result.ok:
            return PollResult(PollOutcome.FAILED, reason=result.error, attempts=attempts)

        poll = interpret_status(result.body, attempts=attempts)
        elapsed = clock() - start
        logger.info(f"Conversion status: {poll.status}  (elapsed {int(elapsed)}s)")
        if poll.outcome is not PollOutcome.PENDING:
            return poll

        if max_attempts is not None and attempts >= max_attempts:
            return PollResult(
                PollOutcome.TIMED_OUT,
                reason=f"No terminal status after {attempts} queries.",
                attempts=attempts,
                status=poll.status,
            )
        if deadline is not None and elapsed + interval > deadline:
            return PollResult(
                PollOutcome.TIMED_OUT,
                reason=f"No terminal status within {deadline:g}s.",
                attempts=attempts,
                status=poll.status,
            )
        sleep(interval)
